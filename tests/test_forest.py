"""
Tests for project scanning, forest construction and tree reconciliation.
"""

import warnings
from pathlib import Path

import pytest

from readscope.backends.treesitter import TreeSitterBackend
from readscope.errors import ProjectRootError
from readscope.scanner import ProjectScanner, relative_to_root
from readscope.symbols.forest import build_forest, file_of
from readscope.symbols.matcher import ReconcileStatus
from readscope.symbols.models import estimate_tokens
from readscope.tracking.depth import ReadDepth

TWO_FUNCTIONS = """def alpha():
    return 1


def beta():
    return 2
"""


class TestProjectScanner:
    """Test ProjectScanner file discovery."""

    def test_skips_hidden_excluded_and_gitignored(self, write_files):
        """Test hidden entries, build dirs and gitignored paths are skipped."""
        root = write_files(
            {
                "app.py": "x = 1\n",
                "pkg/mod.py": "y = 2\n",
                "pkg/gen_out.py": "z = 3\n",
                ".venv/lib.py": "",
                "node_modules/dep/index.js": "",
                "target/debug/build.rs": "",
                "notes.md": "",
                ".gitignore": "*_out.py\n",
            }
        )
        scanner = ProjectScanner(root)
        files = list(scanner.iter_files(TreeSitterBackend().supports_path))
        assert files == ["app.py", "pkg/mod.py"]

    def test_extra_ignore_patterns(self, write_files):
        """Test configured patterns are applied with .gitignore semantics."""
        root = write_files({"app.py": "", "vendored/lib.py": ""})
        scanner = ProjectScanner(root, ignore_patterns=["vendored/"])
        assert list(scanner.iter_files()) == ["app.py"]

    def test_patterns_compile_without_deprecation_warnings(self, write_files):
        """Test ignore patterns use the current GitIgnoreSpec API."""
        root = write_files({"app.py": "", "gen/out.py": "", ".gitignore": "*.log\n"})
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            scanner = ProjectScanner(root, ignore_patterns=["gen/"])
        assert list(scanner.iter_files()) == ["app.py"]

    def test_missing_root(self, tmp_path):
        """Test a missing root raises ProjectRootError."""
        with pytest.raises(ProjectRootError):
            ProjectScanner(tmp_path / "missing")

    def test_relative_to_root(self, tmp_path):
        """Test absolute, relative and outside paths."""
        assert relative_to_root(tmp_path, tmp_path / "a" / "b.py") == "a/b.py"
        assert relative_to_root(tmp_path, tmp_path) == ""
        assert relative_to_root(tmp_path, "./a/b.py") == "a/b.py"
        assert relative_to_root(tmp_path, "../elsewhere.py") is None
        assert relative_to_root(tmp_path, Path("/definitely/elsewhere.py")) is None


class TestBuildForest:
    """Test build_forest."""

    def test_token_estimates(self, write_files):
        """Test symbols estimate their reading cost from their byte span."""
        root = write_files({"a.py": "def f():\n    pass\n"})
        forest, _ = build_forest(ProjectScanner(root), TreeSitterBackend())

        assert forest.get_symbol("a.py::f").estimated_tokens == 5
        assert estimate_tokens(len("fn foo() {}")) == 4
        assert estimate_tokens(0) == 0

    def test_builds_trees_with_stable_ids(self, write_files):
        """Test ids combine the file path and the name path."""
        root = write_files({"pkg/a.py": TWO_FUNCTIONS})
        forest, failures = build_forest(ProjectScanner(root), TreeSitterBackend())

        assert failures == 0
        tree = forest.get_tree("pkg/a.py")
        assert tree.symbol_ids() == ["pkg/a.py::alpha", "pkg/a.py::beta"]
        assert file_of("pkg/a.py::alpha") == "pkg/a.py"
        assert forest.get_symbol("pkg/a.py::beta").name == "beta"
        assert tree.root.parent_id is None
        assert tree.line_count == 6

    def test_duplicate_names_get_suffixes(self, write_files):
        """Test redefinitions of one name get distinct ids."""
        root = write_files({"a.py": "def f():\n    pass\n\n\ndef f():\n    pass\n"})
        forest, _ = build_forest(ProjectScanner(root), TreeSitterBackend())
        assert forest.get_tree("a.py").symbol_ids() == ["a.py::f", "a.py::f~2"]

    def test_parse_failure_keeps_empty_tree(self, write_files):
        """Test unparseable files are kept with no symbols and counted."""
        root = write_files({"good.py": "def ok():\n    pass\n", "bad.py": "def broken(:\n"})
        forest, failures = build_forest(ProjectScanner(root), TreeSitterBackend())

        assert failures == 1
        assert forest.get_tree("bad.py").symbol_count == 0
        assert forest.get_tree("good.py").symbol_count == 1


class TestTreeMatcher:
    """Test TreeMatcher reconciliation and identity carry-over."""

    def test_unchanged_file_is_noop(self, make_engine):
        """Test reconciling identical content changes nothing."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        engine.store.observe("a.py::alpha", "main", ReadDepth.FULL_BODY)

        outcome = engine.matcher.reconcile("a.py")

        assert outcome.status == ReconcileStatus.UNCHANGED
        assert not outcome.changed
        assert not engine.store.get("a.py::alpha", "main").stale

    def test_rename_keeps_identity(self, make_engine):
        """Test a renamed function with the same body keeps its id and goes stale."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        engine.store.observe("a.py::alpha", "main", ReadDepth.FULL_BODY)

        (engine.root / "a.py").write_text(TWO_FUNCTIONS.replace("alpha", "gamma"))
        outcome = engine.matcher.reconcile("a.py")

        assert outcome.status == ReconcileStatus.UPDATED
        assert outcome.matched == 2
        assert outcome.created == 0
        symbol = engine.forest.get_symbol("a.py::alpha")
        assert symbol is not None
        assert symbol.name == "gamma"
        state = engine.store.get("a.py::alpha", "main")
        assert state.depth == ReadDepth.FULL_BODY
        assert state.stale

    def test_rewrite_below_overlap_is_new_symbol(self, make_engine):
        """Test a differently named function with little line overlap is a new symbol."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        engine.store.observe("a.py::alpha", "main", ReadDepth.FULL_BODY)

        body = "".join(f"    v{i} = {i}\n" for i in range(8))
        rewritten = "def delta():\n" + body + "    return 0\n\n\ndef beta():\n    return 2\n"
        (engine.root / "a.py").write_text(rewritten)
        outcome = engine.matcher.reconcile("a.py")

        assert outcome.retired == 1
        assert outcome.created == 1
        assert engine.forest.get_symbol("a.py::alpha") is None
        assert engine.forest.get_symbol("a.py::delta") is not None
        assert engine.store.get("a.py::alpha", "main").depth == ReadDepth.UNSEEN
        assert engine.store.get("a.py::delta", "main").depth == ReadDepth.UNSEEN

    def test_edit_stales_only_seen_symbols(self, make_engine):
        """Test a content change stales symbols some agent had seen."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        engine.store.observe("a.py::beta", "main", ReadDepth.OVERVIEW)

        (engine.root / "a.py").write_text(TWO_FUNCTIONS.replace("return 2", "return 3"))
        engine.matcher.reconcile("a.py")

        assert engine.store.get("a.py::beta", "main").stale
        assert engine.store.get("a.py::beta", "main").stale_threshold == ReadDepth.OVERVIEW
        assert not engine.store.get("a.py::alpha", "main").stale

    def test_deleted_file_retires_symbols(self, make_engine):
        """Test deleting a file removes its tree and state."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        engine.store.observe("a.py::alpha", "main", ReadDepth.FULL_BODY)

        (engine.root / "a.py").unlink()
        outcome = engine.matcher.reconcile("a.py")

        assert outcome.status == ReconcileStatus.REMOVED
        assert outcome.retired == 2
        assert "a.py" not in engine.forest
        assert engine.store.tracked_symbols() == []

    def test_parse_failure_stales_previous_tree(self, make_engine):
        """Test a broken re-parse keeps the old tree and stales every seen symbol."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        engine.store.observe("a.py::alpha", "main", ReadDepth.FULL_BODY)

        (engine.root / "a.py").write_text("def alpha(:\n")
        outcome = engine.matcher.reconcile("a.py")

        assert outcome.status == ReconcileStatus.PARSE_FAILED
        assert engine.forest.get_tree("a.py").symbol_count == 2
        assert engine.store.get("a.py::alpha", "main").stale

    def test_new_file_is_added(self, make_engine):
        """Test a file created after the scan joins the forest."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        (engine.root / "b.py").write_text("def b():\n    pass\n")

        outcome = engine.matcher.reconcile("b.py")

        assert outcome.status == ReconcileStatus.ADDED
        assert engine.forest.get_tree("b.py").symbol_ids() == ["b.py::b"]

    def test_untracked_paths_are_skipped(self, make_engine):
        """Test unsupported and ignored files are never added."""
        engine = make_engine({"a.py": TWO_FUNCTIONS})
        (engine.root / "README.md").write_text("# readme\n")

        assert engine.matcher.reconcile("README.md").status == ReconcileStatus.SKIPPED
        assert engine.matcher.reconcile("gone.py").status == ReconcileStatus.SKIPPED
        assert "README.md" not in engine.forest

    def test_nested_rename_keeps_children(self, make_engine):
        """Test renaming a class keeps the ids of its methods."""
        source = "class Old:\n    def run(self):\n        return 1\n"
        engine = make_engine({"a.py": source})
        engine.store.observe("a.py::Old/run", "main", ReadDepth.FULL_BODY)

        (engine.root / "a.py").write_text(source.replace("Old", "New"))
        engine.matcher.reconcile("a.py")

        method = engine.forest.get_symbol("a.py::Old/run")
        assert method is not None
        assert method.name_path == ("New", "run")
        assert engine.store.get("a.py::Old/run", "main").depth == ReadDepth.FULL_BODY

    def test_tied_old_candidates_are_not_merged(self, make_engine):
        """Test a new symbol matching two old symbols equally retires both."""
        engine = make_engine({"a.py": "def f():\n    return 1\n\n\ndef f():\n    return 2\n"})
        engine.store.observe("a.py::f", "main", ReadDepth.FULL_BODY)
        engine.store.observe("a.py::f~2", "main", ReadDepth.FULL_BODY)

        (engine.root / "a.py").write_text("\n" * 7 + "def f():\n    return 3\n")
        outcome = engine.matcher.reconcile("a.py")

        assert (outcome.matched, outcome.created, outcome.retired) == (0, 1, 2)
        assert engine.forest.get_tree("a.py").symbol_ids() == ["a.py::f"]
        assert engine.store.get("a.py::f~2", "main").depth == ReadDepth.UNSEEN
        state = engine.store.get("a.py::f", "main")
        assert state.depth == ReadDepth.UNSEEN
        assert not state.stale

    def test_tied_new_candidates_are_not_merged(self, make_engine):
        """Test two new symbols claiming one old symbol are both new."""
        engine = make_engine({"a.py": "def f():\n    return 1\n"})
        engine.store.observe("a.py::f", "main", ReadDepth.FULL_BODY)

        (engine.root / "a.py").write_text("\n" * 4 + "def f():\n    return 1\n\n\ndef f():\n    return 2\n")
        outcome = engine.matcher.reconcile("a.py")

        assert (outcome.matched, outcome.created, outcome.retired) == (0, 2, 1)
        assert engine.forest.get_tree("a.py").symbol_ids() == ["a.py::f", "a.py::f~2"]
        for symbol_id in ("a.py::f", "a.py::f~2"):
            assert engine.store.get(symbol_id, "main").depth == ReadDepth.UNSEEN
