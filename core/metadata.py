"""Multi-valued metadata bag attached to every URL."""

from __future__ import annotations

from typing import Iterable, Iterator, Mapping


class Metadata:
    """
    Mapping of key -> ordered list of string values.

    Invariants:
    - keys are case sensitive
    - a present key always has at least one value
    - values are never blank strings
    - insertion order within a key is preserved; no order is promised across keys
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Iterable[str]] | None = None) -> None:
        self._values: dict[str, list[str]] = {}
        if values:
            for key, vals in values.items():
                self.add_values(key, vals)

    @classmethod
    def from_dict(cls, values: Mapping[str, Iterable[str]] | None) -> Metadata:
        """Build a Metadata bag from a plain mapping (values are copied)."""
        return cls(values)

    def to_dict(self) -> dict[str, list[str]]:
        """Return a JSON-safe copy."""
        return {key: list(vals) for key, vals in self._values.items()}

    def copy(self) -> Metadata:
        return Metadata(self._values)

    def get_first_value(self, key: str) -> str | None:
        values = self._values.get(key)
        if not values:
            return None
        return values[0]

    def get_values(self, key: str) -> list[str] | None:
        values = self._values.get(key)
        if not values:
            return None
        return list(values)

    def set_value(self, key: str, value: str) -> None:
        """Replace every value of `key` with `value`."""
        if value is None or not str(value).strip():
            raise ValueError(f"metadata value for {key!r} must not be blank")
        self._values[key] = [str(value)]

    def set_values(self, key: str, values: Iterable[str]) -> None:
        """Replace every value of `key`; blank entries are dropped."""
        kept = [str(v) for v in values if v is not None and str(v).strip()]
        if kept:
            self._values[key] = kept
        else:
            self._values.pop(key, None)

    def add_value(self, key: str, value: str | None) -> None:
        """Append one value; blank values are ignored."""
        if value is None or not str(value).strip():
            return
        self._values.setdefault(key, []).append(str(value))

    def add_values(self, key: str, values: Iterable[str] | None) -> None:
        if not values:
            return
        for value in values:
            self.add_value(key, value)

    def remove(self, key: str) -> list[str] | None:
        return self._values.pop(key, None)

    def contains(self, key: str, value: str | None = None) -> bool:
        values = self._values.get(key)
        if not values:
            return False
        return value is None or value in values

    def keys(self) -> list[str]:
        return list(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Metadata):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"Metadata({self._values!r})"

    def to_text(self, prefix: str = "") -> str:
        """Render one `key: value` line per value."""
        lines = []
        for key, values in self._values.items():
            for value in values:
                lines.append(f"{prefix or ''}{key}: {value}\n")
        return "".join(lines)

    def __str__(self) -> str:
        return self.to_text()
