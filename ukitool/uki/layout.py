# @file layout.py
# Computes the virtual offsets at which the UKI payload sections are placed
# when they are appended to an EFI stub.
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Section layout calculation for Unified Kernel Images.

The five payload sections are appended after the last section of the stub in
a fixed order. Each section starts on a multiple of the stub's section
alignment and no two sections overlap.

Two alignment policies exist:

- `AlignmentPolicy.STRICT_NEXT_BOUNDARY` always advances to the next
  boundary, even when the offset is already aligned. This is what the legacy
  uki_create.sh did and reproduces its images byte for byte. It is the default.
- `AlignmentPolicy.ROUND_UP_OR_STAY` keeps an aligned offset in place. An
  empty payload still moves the next section one alignment unit on, so no
  two sections share an address.

Nothing in this module reads the environment or touches the stub binary; the
only I/O is a stat of each payload file.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum

OSREL_SECTION = ".osrel"
CMDLINE_SECTION = ".cmdline"
SPLASH_SECTION = ".splash"
INITRD_SECTION = ".initrd"
LINUX_SECTION = ".linux"

# Order matters, sections are laid out in this order.
PAYLOAD_SECTIONS = (OSREL_SECTION, CMDLINE_SECTION, SPLASH_SECTION, INITRD_SECTION, LINUX_SECTION)


class UkiLayoutError(Exception):
    """Base class of every layout failure."""


class MissingFileError(UkiLayoutError):
    """A payload path does not exist, can not be read or is not a regular file."""

    def __init__(self, section: str, path: str) -> None:
        """Inits the error with the section and the offending path."""
        self.section = section
        self.path = path
        super().__init__(f"Required file for section {section} not found: {path}")


class BadAlignmentError(UkiLayoutError):
    """The section alignment is zero, negative or not a power of two."""

    def __init__(self, alignment: int) -> None:
        """Inits the error with the rejected alignment."""
        self.alignment = alignment
        super().__init__(f"Section alignment {alignment!r} is not a positive power of two")


class ParseError(UkiLayoutError):
    """The stub section table is malformed, empty or has no alignment field."""


class OverlapDetectedError(UkiLayoutError):
    """Two computed section ranges overlap."""

    def __init__(self, first: str, first_range: tuple, second: str, second_range: tuple) -> None:
        """Inits the error with both offending ranges."""
        self.first = first
        self.second = second
        super().__init__(
            f"Section {first} [0x{first_range[0]:x}, 0x{first_range[1]:x}) overlaps "
            f"{second} [0x{second_range[0]:x}, 0x{second_range[1]:x})"
        )


class AlignmentPolicy(Enum):
    """Round up rule applied to every section offset."""

    STRICT_NEXT_BOUNDARY = "strict-next-boundary"
    ROUND_UP_OR_STAY = "round-up-or-stay"


def align_offset(offset: int, alignment: int, policy: AlignmentPolicy = AlignmentPolicy.STRICT_NEXT_BOUNDARY) -> int:
    """Rounds offset up to a multiple of alignment using the given policy."""
    if policy == AlignmentPolicy.STRICT_NEXT_BOUNDARY:
        return offset + alignment - offset % alignment
    return offset + (alignment - offset % alignment) % alignment


@dataclass(frozen=True)
class StubSection:
    """A section already present in the stub binary."""

    name: str
    virtual_address: int
    size: int

    @property
    def end(self) -> int:
        """First address after the section."""
        return self.virtual_address + self.size


@dataclass(frozen=True)
class StubSectionTable:
    """The section table and section alignment of a stub binary."""

    sections: tuple
    alignment: int

    @property
    def last_end(self) -> int:
        """End of the highest section, 0 for a stub without sections."""
        return max((section.end for section in self.sections), default=0)


@dataclass(frozen=True)
class SectionSpec:
    """Placement of one payload file inside the image."""

    name: str
    source_path: str
    size_bytes: int
    virtual_offset: int

    @property
    def end(self) -> int:
        """First address after the section."""
        return self.virtual_offset + self.size_bytes

    @property
    def vma(self) -> str:
        """The virtual offset as a hex string, e.g. 0x3000."""
        return f"0x{self.virtual_offset:x}"


@dataclass(frozen=True)
class LayoutPlan:
    """Ordered section placements for one image build."""

    sections: tuple
    alignment: int
    policy: AlignmentPolicy

    def __iter__(self):
        """Iterates the SectionSpecs in layout order."""
        return iter(self.sections)

    def __len__(self) -> int:
        """Number of payload sections."""
        return len(self.sections)

    def offsets(self) -> list[tuple[str, str]]:
        """Returns (section name, hex virtual offset) pairs in layout order."""
        return [(section.name, section.vma) for section in self.sections]

    def get(self, name: str) -> SectionSpec:
        """Returns the SectionSpec of a section.

        Raises:
            (KeyError): no section with that name in the plan
        """
        for section in self.sections:
            if section.name == name:
                return section
        raise KeyError(name)


@dataclass(frozen=True)
class LayoutConfig:
    """Payload files and alignment policy for one layout computation.

    `payloads` is a tuple of (section name, path) pairs in PAYLOAD_SECTIONS
    order.
    """

    payloads: tuple
    policy: AlignmentPolicy = AlignmentPolicy.STRICT_NEXT_BOUNDARY

    @classmethod
    def from_paths(
        cls,
        osrel: str,
        cmdline: str,
        splash: str,
        initrd: str,
        linux: str,
        policy: AlignmentPolicy = AlignmentPolicy.STRICT_NEXT_BOUNDARY,
    ) -> "LayoutConfig":
        """Builds a config from the five payload paths."""
        paths = (osrel, cmdline, splash, initrd, linux)
        return cls(payloads=tuple(zip(PAYLOAD_SECTIONS, paths)), policy=policy)


def validate_alignment(alignment: int) -> int:
    """Returns alignment if it is a positive power of two.

    Raises:
        (BadAlignmentError): zero, negative, non integer or not a power of two
    """
    if isinstance(alignment, bool) or not isinstance(alignment, int):
        raise BadAlignmentError(alignment)
    if alignment <= 0 or alignment & (alignment - 1) != 0:
        raise BadAlignmentError(alignment)
    return alignment


def validate_payloads(payloads: tuple) -> None:
    """Checks that the payloads are exactly the fixed sections, in order.

    Raises:
        (ValueError): sections missing, duplicated or out of order
    """
    names = tuple(name for name, _ in payloads)
    if names != PAYLOAD_SECTIONS:
        raise ValueError(f"Payload sections must be {', '.join(PAYLOAD_SECTIONS)} in that order, got {names}")


def read_payload_sizes(payloads: tuple) -> list[int]:
    """Stats every payload and returns the sizes in payload order.

    All files are checked before any size is used, so a missing file fails
    the whole computation.

    Raises:
        (MissingFileError): the first payload that is absent, unreadable or not a regular file
    """
    sizes = []
    for name, path in payloads:
        if path is None or not os.path.isfile(path) or not os.access(path, os.R_OK):
            raise MissingFileError(name, path)
        try:
            sizes.append(os.stat(path).st_size)
        except OSError as exc:
            raise MissingFileError(name, path) from exc
    return sizes


def plan_offsets(
    stub_sections: tuple,
    alignment: int,
    sizes: list[int],
    policy: AlignmentPolicy = AlignmentPolicy.STRICT_NEXT_BOUNDARY,
) -> list[int]:
    """Computes one offset per size, starting after the last stub section.

    Args:
        stub_sections (tuple[StubSection]): sections already in the stub
        alignment (int): section alignment of the stub
        sizes (list[int]): payload sizes, in layout order
        policy (AlignmentPolicy): round up rule

    Returns:
        (list[int]): the virtual offset of each payload
    """
    validate_alignment(alignment)
    offset = align_offset(max((s.end for s in stub_sections), default=0), alignment, policy)
    offsets = []
    for size in sizes:
        offsets.append(offset)
        next_offset = align_offset(offset + size, alignment, policy)
        # an empty payload still gets an alignment unit of its own
        if next_offset == offset:
            next_offset += alignment
        offset = next_offset
    return offsets


def check_overlaps(stub_sections: tuple, sections: tuple) -> None:
    """Verifies that no payload range intersects a stub range or another payload range.

    Empty ranges can not overlap anything. Stub sections are not checked
    against each other.

    Raises:
        (OverlapDetectedError): the first overlapping pair found
    """
    stub_ranges = [(s.name, s.virtual_address, s.end) for s in stub_sections if s.size > 0]
    payload_ranges = [(s.name, s.virtual_offset, s.end) for s in sections if s.size_bytes > 0]

    for index, (name, start, end) in enumerate(payload_ranges):
        for other_name, other_start, other_end in stub_ranges + payload_ranges[index + 1:]:
            if start < other_end and other_start < end:
                raise OverlapDetectedError(name, (start, end), other_name, (other_start, other_end))


def compute_layout(stub_table: StubSectionTable, config: LayoutConfig) -> LayoutPlan:
    """Computes the LayoutPlan for the payloads of config appended to the stub.

    Args:
        stub_table (StubSectionTable): section table of the stub
        config (LayoutConfig): payload files and alignment policy

    Returns:
        (LayoutPlan): one SectionSpec per payload, in layout order

    Raises:
        (BadAlignmentError): invalid stub alignment
        (MissingFileError): a payload file is missing
        (OverlapDetectedError): the computed ranges are inconsistent
    """
    alignment = validate_alignment(stub_table.alignment)
    validate_payloads(config.payloads)
    sizes = read_payload_sizes(config.payloads)

    offsets = plan_offsets(stub_table.sections, alignment, sizes, config.policy)
    sections = tuple(
        SectionSpec(name=name, source_path=path, size_bytes=size, virtual_offset=offset)
        for (name, path), size, offset in zip(config.payloads, sizes, offsets)
    )
    check_overlaps(stub_table.sections, sections)

    for section in sections:
        logging.debug(f"{section.name}: offset {section.vma} size 0x{section.size_bytes:x} ({section.source_path})")
    return LayoutPlan(sections=sections, alignment=alignment, policy=config.policy)
