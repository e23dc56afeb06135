"""Read depth lattice."""

from enum import IntEnum


class ReadDepth(IntEnum):
    """How thoroughly a symbol has been examined, ordered shallow to deep."""

    UNSEEN = 0
    NAME_ONLY = 1
    OVERVIEW = 2
    SIGNATURE = 3
    FULL_BODY = 4

    @property
    def label(self) -> str:
        return DEPTH_LABELS[self]

    @property
    def is_seen(self) -> bool:
        return self > ReadDepth.UNSEEN

    @classmethod
    def parse(cls, value: "str | int | ReadDepth") -> "ReadDepth":
        """Accept an enum member, its integer value, its label, or its name in any case."""
        if isinstance(value, ReadDepth):
            return value
        if isinstance(value, int):
            return cls(value)
        key = value.strip().upper().replace("-", "_").replace(" ", "_")
        if key in cls.__members__:
            return cls[key]
        for depth, label in DEPTH_LABELS.items():
            if label == key.lower():
                return depth
        raise ValueError(f"Unknown read depth: {value}")


DEPTH_LABELS: dict[ReadDepth, str] = {
    ReadDepth.UNSEEN: "unseen",
    ReadDepth.NAME_ONLY: "name",
    ReadDepth.OVERVIEW: "overview",
    ReadDepth.SIGNATURE: "signature",
    ReadDepth.FULL_BODY: "full",
}
