"""Composite resource identifiers.

Identifiers are persisted by the surrounding state store as opaque strings
and must stay parseable forever. Resources already under management are not
migrated when an encoding changes, so VersionedCodec keeps every historical
encoding decodable next to the current one.

Components are opaque: no case folding, trimming or other normalization.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import MalformedIdentifier


class IdentifierCodec(ABC):
    """Encodes an ordered list of components into a single string."""

    @abstractmethod
    def encode(self, parts: Sequence[str]) -> str:
        """Encode components into an identifier string.

        Raises:
            MalformedIdentifier: If a component cannot be represented.
        """

    @abstractmethod
    def decode(self, value: str, expected_count: int) -> list[str]:
        """Decode an identifier string into components.

        Raises:
            MalformedIdentifier: On wrong component count or an empty component.
        """


class DelimitedCodec(IdentifierCodec):
    """Joins components with a delimiter absent from their alphabet."""

    def __init__(self, delimiter: str = "/", prefix: str = "") -> None:
        if not delimiter:
            raise ValueError("delimiter cannot be empty")
        self.delimiter = delimiter
        self.prefix = prefix

    def __repr__(self) -> str:
        return f"DelimitedCodec(delimiter={self.delimiter!r}, prefix={self.prefix!r})"

    def encode(self, parts: Sequence[str]) -> str:
        for part in parts:
            if not part:
                raise MalformedIdentifier(f"Empty identifier component in {list(parts)}")
            if self.delimiter in part:
                raise MalformedIdentifier(
                    f"Identifier component {part!r} contains delimiter {self.delimiter!r}"
                )
        return self.prefix + self.delimiter.join(parts)

    def decode(self, value: str, expected_count: int) -> list[str]:
        if not value.startswith(self.prefix):
            raise MalformedIdentifier(
                f"Unexpected format of ID ({value!r}), expected prefix {self.prefix!r}",
                identifier=value,
            )
        parts = value[len(self.prefix):].split(self.delimiter)
        if len(parts) != expected_count or any(not part for part in parts):
            raise MalformedIdentifier(
                f"Unexpected format of ID ({value!r}), expected {expected_count} "
                f"non-empty components separated by {self.delimiter!r}",
                identifier=value,
            )
        return parts


class FixedWidthCodec(IdentifierCodec):
    """Concatenates components of declared fixed lengths."""

    def __init__(self, widths: Sequence[int], prefix: str = "") -> None:
        if not widths or any(w < 1 for w in widths):
            raise ValueError("widths must be a non-empty sequence of positive integers")
        self.widths = tuple(widths)
        self.prefix = prefix

    def __repr__(self) -> str:
        return f"FixedWidthCodec(widths={self.widths!r}, prefix={self.prefix!r})"

    def encode(self, parts: Sequence[str]) -> str:
        if len(parts) != len(self.widths):
            raise MalformedIdentifier(
                f"Expected {len(self.widths)} components, got {len(parts)}"
            )
        for part, width in zip(parts, self.widths, strict=True):
            if len(part) != width:
                raise MalformedIdentifier(
                    f"Identifier component {part!r} must be exactly {width} characters"
                )
        return self.prefix + "".join(parts)

    def decode(self, value: str, expected_count: int) -> list[str]:
        if expected_count != len(self.widths):
            raise MalformedIdentifier(
                f"Codec has {len(self.widths)} components, {expected_count} expected",
                identifier=value,
            )
        if not value.startswith(self.prefix):
            raise MalformedIdentifier(
                f"Unexpected format of ID ({value!r}), expected prefix {self.prefix!r}",
                identifier=value,
            )
        body = value[len(self.prefix):]
        if len(body) != sum(self.widths):
            raise MalformedIdentifier(
                f"Unexpected length of ID ({value!r}), expected {sum(self.widths)} characters",
                identifier=value,
            )

        parts: list[str] = []
        offset = 0
        for width in self.widths:
            parts.append(body[offset:offset + width])
            offset += width
        return parts


class VersionedCodec(IdentifierCodec):
    """Current encoding plus legacy encodings that must still decode."""

    def __init__(self, current: IdentifierCodec, legacy: Sequence[IdentifierCodec] = ()) -> None:
        self.current = current
        self.legacy = tuple(legacy)

    def __repr__(self) -> str:
        return f"VersionedCodec(current={self.current!r}, legacy={self.legacy!r})"

    def encode(self, parts: Sequence[str]) -> str:
        return self.current.encode(parts)

    def decode(self, value: str, expected_count: int) -> list[str]:
        failures: list[str] = []
        for codec in (self.current, *self.legacy):
            try:
                return codec.decode(value, expected_count)
            except MalformedIdentifier as e:
                failures.append(e.message)
        raise MalformedIdentifier(
            f"ID ({value!r}) matches no known format: " + "; ".join(failures),
            identifier=value,
        )


@dataclass(frozen=True)
class ResourceIdentifier:
    """An immutable, encoded resource identifier."""

    kind: str
    parts: tuple[str, ...]
    value: str

    @classmethod
    def build(cls, kind: str, parts: Sequence[str], codec: IdentifierCodec) -> ResourceIdentifier:
        return cls(kind=kind, parts=tuple(parts), value=codec.encode(parts))

    @classmethod
    def parse(
        cls, kind: str, value: str, codec: IdentifierCodec, expected_count: int
    ) -> ResourceIdentifier:
        """Parse a persisted identifier string.

        The stored value is kept as-is so legacy identifiers round-trip to the
        state store unchanged.
        """
        return cls(kind=kind, parts=tuple(codec.decode(value, expected_count)), value=value)

    def __str__(self) -> str:
        return self.value
