"""
Tests for EventCorrelator: resolving tool-use events to symbol depths.
"""

import warnings

import pytest
from conftest import TEN_LINE_FUNCTION

from readscope.correlation.correlator import CorrelationStatus
from readscope.correlation.policy import CallShape
from readscope.symbols.matcher import ReconcileStatus
from readscope.tracking.depth import ReadDepth

CLASS_SOURCE = """class Service:
    def start(self):
        return "started"

    def stop(self):
        return "stopped"


def helper():
    return Service()
"""

TRIO_SOURCE = """def f(x):
    return x


def g(x):
    return x


def h(x, y):
    return y
"""


class TestReadAndStaleness:
    """Test the read, external edit, search, re-read sequence."""

    def test_stale_clears_only_on_full_reread(self, make_engine):
        """Test staleness survives a search hit and clears on a full read."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        f_id = engine.symbol_id("a.py", "f")

        result = engine.apply("Read", file_path="a.py")
        assert result.status == CorrelationStatus.APPLIED
        assert engine.store.get(f_id, "main").depth == ReadDepth.FULL_BODY

        edited = TEN_LINE_FUNCTION.replace("    d = 4\n    e = 5\n", "    d = 40\n    e = 50\n")
        (engine.root / "a.py").write_text(edited)
        engine.matcher.reconcile("a.py")
        state = engine.store.get(f_id, "main")
        assert state.stale
        assert state.depth == ReadDepth.FULL_BODY

        engine.apply("Grep", pattern="b = 2")
        assert engine.store.get(f_id, "main").stale

        engine.apply("Read", file_path="a.py", offset=1, limit=10)
        state = engine.store.get(f_id, "main")
        assert not state.stale
        assert state.depth == ReadDepth.FULL_BODY

    def test_partial_read_gives_signature(self, make_engine):
        """Test a range cutting through a symbol gives the partial depth."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        result = engine.apply("Read", file_path="a.py", offset=1, limit=3)
        assert result.targets == {"a.py::f": ReadDepth.SIGNATURE}

    def test_serena_read_file_lines_are_zero_based(self, make_engine):
        """Test read_file start/end lines cover the matching 1-based lines."""
        engine = make_engine({"svc.py": CLASS_SOURCE})
        result = engine.apply(
            "mcp__serena__read_file", relative_path="svc.py", start_line=1, end_line=2
        )
        assert result.targets["svc.py::Service/start"] == ReadDepth.FULL_BODY
        assert result.targets["svc.py::Service"] == ReadDepth.SIGNATURE
        assert "svc.py::helper" not in result.targets


class TestEnumerate:
    """Test directory listing and globbing."""

    @pytest.fixture
    def engine(self, make_engine):
        return make_engine(
            {
                "pkg/b.py": "def b():\n    pass\n",
                "pkg/c.py": "def c():\n    pass\n",
                "pkg/sub/d.py": "def d():\n    pass\n",
                "top.py": "def top():\n    pass\n",
            }
        )

    def test_list_directory_is_name_only(self, engine):
        """Test listing a directory marks its files' symbols as name-only."""
        result = engine.apply("LS", path="pkg")
        assert result.shape == CallShape.ENUMERATE
        assert result.targets == {
            "pkg/b.py::b": ReadDepth.NAME_ONLY,
            "pkg/c.py::c": ReadDepth.NAME_ONLY,
        }

    def test_recursive_listing(self, engine):
        """Test list_dir with recursive includes nested files."""
        result = engine.apply("mcp__serena__list_dir", relative_path="pkg", recursive=True)
        assert "pkg/sub/d.py::d" in result.targets

    def test_glob_is_anchored(self, engine):
        """Test a glob without a directory part matches top-level files only."""
        result = engine.apply("Glob", pattern="*.py")
        assert list(result.targets) == ["top.py::top"]

    def test_recursive_glob(self, engine):
        """Test ** patterns reach nested directories."""
        result = engine.apply("Glob", pattern="**/*.py", path="pkg")
        assert set(result.targets) == {"pkg/b.py::b", "pkg/c.py::c", "pkg/sub/d.py::d"}

    def test_find_file_mask(self, engine):
        """Test find_file masks match at any depth."""
        result = engine.apply("find_file", file_mask="d.py", relative_path=".")
        assert list(result.targets) == ["pkg/sub/d.py::d"]

    def test_globs_compile_without_deprecation_warnings(self, engine):
        """Test glob and file mask matching use the current GitIgnoreSpec API."""
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            engine.apply("Glob", pattern="*.py")
            engine.apply("find_file", file_mask="d.py", relative_path=".")
            engine.apply("Grep", pattern="pass", glob="*.py")


class TestSearchAndOutline:
    """Test pattern searches and symbol overviews."""

    def test_search_targets_enclosing_symbols(self, make_engine):
        """Test a match marks every symbol containing the matched line."""
        engine = make_engine({"svc.py": CLASS_SOURCE})
        result = engine.apply("Grep", pattern="stopped")
        assert result.targets == {
            "svc.py::Service": ReadDepth.OVERVIEW,
            "svc.py::Service/stop": ReadDepth.OVERVIEW,
        }

    def test_search_case_insensitive_and_glob(self, make_engine):
        """Test -i and glob options."""
        engine = make_engine({"svc.py": CLASS_SOURCE, "other.py": "def started():\n    pass\n"})
        result = engine.apply("Grep", pattern="STARTED", glob="svc.py", **{"-i": True})
        assert set(result.targets) == {"svc.py::Service", "svc.py::Service/start"}

    def test_invalid_regex_falls_back_to_literal(self, make_engine):
        """Test an invalid regex is searched literally."""
        engine = make_engine({"a.py": "def f():\n    return g(1)\n"})
        result = engine.apply("Grep", pattern="g(1")
        assert list(result.targets) == ["a.py::f"]

    def test_outline_marks_top_level(self, make_engine):
        """Test get_symbols_overview marks top-level symbols only."""
        engine = make_engine({"svc.py": CLASS_SOURCE})
        result = engine.apply("get_symbols_overview", relative_path="svc.py")
        assert result.targets == {
            "svc.py::Service": ReadDepth.OVERVIEW,
            "svc.py::helper": ReadDepth.OVERVIEW,
        }


class TestSymbolCalls:
    """Test Serena symbol lookup, references and symbol edits."""

    @pytest.fixture
    def engine(self, make_engine):
        return make_engine({"svc.py": CLASS_SOURCE})

    def test_find_symbol_signature(self, engine):
        """Test find_symbol without a body gives the signature depth."""
        result = engine.apply("find_symbol", name_path_pattern="Service/start")
        assert result.targets == {"svc.py::Service/start": ReadDepth.SIGNATURE}

    def test_find_symbol_with_body_and_depth(self, engine):
        """Test include_body and depth options."""
        result = engine.apply(
            "mcp__plugin_serena_serena__find_symbol",
            name_path_pattern="Service",
            include_body=True,
            depth=1,
        )
        assert result.targets == {
            "svc.py::Service": ReadDepth.FULL_BODY,
            "svc.py::Service/start": ReadDepth.NAME_ONLY,
            "svc.py::Service/stop": ReadDepth.NAME_ONLY,
        }

    def test_absolute_name_path(self, engine):
        """Test a leading slash requires a top-level match."""
        assert engine.apply("find_symbol", name_path_pattern="/start").status == (
            CorrelationStatus.UNRESOLVED
        )

    def test_substring_matching(self, engine):
        """Test substring matching on the last segment."""
        result = engine.apply("find_symbol", name_path_pattern="Service/st", substring_matching=True)
        assert set(result.targets) == {"svc.py::Service/start", "svc.py::Service/stop"}

    def test_find_referencing_symbols(self, engine):
        """Test the referenced symbol itself is marked."""
        result = engine.apply(
            "find_referencing_symbols", name_path="helper", relative_path="svc.py"
        )
        assert result.targets == {"svc.py::helper": ReadDepth.OVERVIEW}

    def test_replace_symbol_body(self, engine):
        """Test a symbol edit reconciles the file and marks the symbol fully read."""
        edited = CLASS_SOURCE.replace('return "stopped"', 'return "halted"')
        (engine.root / "svc.py").write_text(edited)
        result = engine.apply(
            "replace_symbol_body",
            name_path="Service/stop",
            relative_path="svc.py",
            body='def stop(self):\n        return "halted"',
        )
        assert result.reconciled[0].status == ReconcileStatus.UPDATED
        assert result.targets == {"svc.py::Service/stop": ReadDepth.FULL_BODY}

    def test_rename_symbol(self, engine):
        """Test a rename resolves through the new name and keeps the id."""
        (engine.root / "svc.py").write_text(CLASS_SOURCE.replace("def helper", "def assist"))
        result = engine.apply(
            "rename_symbol", name_path="helper", relative_path="svc.py", new_name="assist"
        )
        assert result.targets == {"svc.py::helper": ReadDepth.FULL_BODY}


class TestModify:
    """Test edits and whole-file writes."""

    def test_edit_marks_edited_symbol(self, make_engine):
        """Test an Edit covers the symbol holding the new text."""
        engine = make_engine({"svc.py": CLASS_SOURCE})
        new_string = '        return "halted"'
        (engine.root / "svc.py").write_text(CLASS_SOURCE.replace('        return "stopped"', new_string))

        result = engine.apply(
            "Edit",
            file_path="svc.py",
            old_string='        return "stopped"',
            new_string=new_string,
        )
        assert result.targets == {
            "svc.py::Service/stop": ReadDepth.SIGNATURE,
            "svc.py::Service": ReadDepth.SIGNATURE,
        }

    def test_write_covers_whole_file(self, make_engine):
        """Test a Write of a new file adds it and marks everything fully read."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        content = "def created():\n    return 1\n"
        (engine.root / "new.py").write_text(content)

        result = engine.apply("Write", file_path="new.py", content=content)
        assert result.reconciled[0].status == ReconcileStatus.ADDED
        assert result.targets == {"new.py::created": ReadDepth.FULL_BODY}

    def test_multi_edit(self, make_engine):
        """Test MultiEdit locates each replacement."""
        engine = make_engine({"svc.py": CLASS_SOURCE})
        edited = CLASS_SOURCE.replace('"started"', '"up"').replace("return Service()", "return None")
        (engine.root / "svc.py").write_text(edited)

        result = engine.apply(
            "MultiEdit",
            file_path="svc.py",
            edits=[
                {"old_string": '"started"', "new_string": '"up"'},
                {"old_string": "return Service()", "new_string": "return None"},
            ],
        )
        assert result.targets["svc.py::Service/start"] == ReadDepth.SIGNATURE
        assert result.targets["svc.py::helper"] == ReadDepth.SIGNATURE

    def test_edit_ignores_other_symbols_with_same_text(self, make_engine):
        """Test an Edit only covers the edited symbol when its new text also appears elsewhere."""
        engine = make_engine({"a.py": TRIO_SOURCE})
        (engine.root / "a.py").write_text(TRIO_SOURCE.replace("    return y\n", "    return x\n"))

        result = engine.apply(
            "Edit", file_path="a.py", old_string="    return y\n", new_string="    return x\n"
        )

        assert result.targets == {"a.py::h": ReadDepth.SIGNATURE}
        assert engine.store.get("a.py::f", "main").depth == ReadDepth.UNSEEN

    def test_replace_all_covers_every_occurrence(self, make_engine):
        """Test replace_all marks every symbol holding a replaced occurrence."""
        engine = make_engine({"a.py": TRIO_SOURCE})
        (engine.root / "a.py").write_text(TRIO_SOURCE.replace("return x", "return 0"))

        result = engine.apply(
            "Edit",
            file_path="a.py",
            old_string="return x",
            new_string="return 0",
            replace_all=True,
        )

        assert result.targets == {"a.py::f": ReadDepth.SIGNATURE, "a.py::g": ReadDepth.SIGNATURE}

    def test_multi_edit_ranges_follow_earlier_edits(self, make_engine):
        """Test later MultiEdit entries land on the lines the earlier ones produced."""
        engine = make_engine({"a.py": TRIO_SOURCE})
        edited = TRIO_SOURCE.replace("def f(x):\n", "def f(x):\n    x += 1\n    x += 2\n")
        edited = edited.replace("    return y\n", "    return y * 2\n")
        (engine.root / "a.py").write_text(edited)

        result = engine.apply(
            "MultiEdit",
            file_path="a.py",
            edits=[
                {"old_string": "def f(x):\n", "new_string": "def f(x):\n    x += 1\n    x += 2\n"},
                {"old_string": "    return y\n", "new_string": "    return y * 2\n"},
            ],
        )

        assert result.targets == {"a.py::f": ReadDepth.SIGNATURE, "a.py::h": ReadDepth.SIGNATURE}

    def test_already_applied_ambiguous_edit_marks_nothing(self, make_engine):
        """Test an edit whose new text is ambiguous in an already current tree marks nothing."""
        edited = TRIO_SOURCE.replace("    return y\n", "    return x\n")
        engine = make_engine({"a.py": edited})

        result = engine.apply(
            "Edit", file_path="a.py", old_string="    return y\n", new_string="    return x\n"
        )

        assert result.status == CorrelationStatus.APPLIED
        assert result.targets == {}


class TestUnresolvedAndUntracked:
    """Test events that change nothing."""

    def test_unknown_tool_is_untracked(self, make_engine):
        """Test tools outside the policy are untracked."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        result = engine.apply("WebFetch", url="https://example.com")
        assert result.status == CorrelationStatus.UNTRACKED
        assert engine.store.agents() == ("main",)

    def test_missing_file_is_unresolved(self, make_engine):
        """Test reading an unknown file is unresolved and changes nothing."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        result = engine.apply("Read", file_path="missing.py")
        assert result.status == CorrelationStatus.UNRESOLVED
        assert engine.store.tracked_symbols() == []

    def test_path_outside_root_is_unresolved(self, make_engine, tmp_path):
        """Test paths outside the project root are unresolved."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        result = engine.apply("Read", file_path=str(tmp_path / "elsewhere.py"))
        assert result.status == CorrelationStatus.UNRESOLVED

    def test_search_without_match_is_unresolved(self, make_engine):
        """Test a search with no hits is unresolved."""
        engine = make_engine({"a.py": TEN_LINE_FUNCTION})
        assert engine.apply("Grep", pattern="no_such_text").status == CorrelationStatus.UNRESOLVED

    def test_replaying_events_is_deterministic(self, make_engine):
        """Test the same events produce the same states."""
        engine = make_engine({"svc.py": CLASS_SOURCE})

        def replay() -> dict[str, ReadDepth]:
            engine.store.clear()
            engine.apply("Grep", pattern="return")
            engine.apply("find_symbol", name_path_pattern="helper", include_body=True)
            return {k: v["main"].depth for k, v in engine.store.export().items()}

        first = replay()
        assert first == replay()
        assert first["svc.py::helper"] == ReadDepth.FULL_BODY
        assert first["svc.py::Service/stop"] == ReadDepth.OVERVIEW
