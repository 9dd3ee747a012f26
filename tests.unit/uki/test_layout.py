## @file test_layout.py
# This unittest module contains test cases for the UKI section layout calculation.
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Tests for the layout module."""

import itertools
import os
import tempfile
import unittest
from unittest.mock import patch

import pytest
from ukitool.uki import layout
from ukitool.uki.layout import (
    AlignmentPolicy,
    BadAlignmentError,
    LayoutConfig,
    MissingFileError,
    OverlapDetectedError,
    SectionSpec,
    StubSection,
    StubSectionTable,
)

STRICT = AlignmentPolicy.STRICT_NEXT_BOUNDARY
STAY = AlignmentPolicy.ROUND_UP_OR_STAY

# a single stub section ending on an aligned address
STUB_SECTIONS = (StubSection(".text", 0x1000, 0x1000),)
STUB_TABLE = StubSectionTable(sections=STUB_SECTIONS, alignment=0x1000)

PAYLOAD_SIZES = {
    ".osrel": 100,
    ".cmdline": 40,
    ".splash": 0x2345,
    ".initrd": 0x100000,
    ".linux": 0x80000,
}

SIZE_GRID = (0, 1, 100, 0xFFF, 0x1000, 0x1001, 0x2345)


def write_payloads(directory: str, sizes: dict) -> LayoutConfig:
    """Writes one file per payload section and returns the matching LayoutConfig."""
    paths = {}
    for name, size in sizes.items():
        path = os.path.join(directory, name.lstrip(".") + ".bin")
        with open(path, "wb") as payload:
            payload.write(b"\xa5" * size)
        paths[name] = path
    return LayoutConfig(payloads=tuple((name, paths[name]) for name in layout.PAYLOAD_SECTIONS))


class AlignOffsetTest(unittest.TestCase):
    """Tests for the two round up rules."""

    def test_strict_always_advances(self) -> None:
        """An aligned offset moves to the next boundary."""
        self.assertEqual(layout.align_offset(0x2000, 0x1000, STRICT), 0x3000)
        self.assertEqual(layout.align_offset(0x2001, 0x1000, STRICT), 0x3000)
        self.assertEqual(layout.align_offset(0, 0x1000, STRICT), 0x1000)

    def test_stay_keeps_aligned_offsets(self) -> None:
        """An aligned offset is kept, any other one is rounded up."""
        self.assertEqual(layout.align_offset(0x2000, 0x1000, STAY), 0x2000)
        self.assertEqual(layout.align_offset(0x2001, 0x1000, STAY), 0x3000)
        self.assertEqual(layout.align_offset(0, 0x1000, STAY), 0)

    def test_default_policy_is_strict(self) -> None:
        """The legacy rule is the default."""
        self.assertEqual(layout.align_offset(0x2000, 0x1000), 0x3000)


class ValidateAlignmentTest(unittest.TestCase):
    """Tests for validate_alignment."""

    def test_accepts_powers_of_two(self) -> None:
        """Every power of two is a valid alignment."""
        for exponent in range(0, 21):
            self.assertEqual(layout.validate_alignment(1 << exponent), 1 << exponent)

    def test_rejects_bad_values(self) -> None:
        """Zero, negative, non power of two and non integer alignments fail."""
        for alignment in (0, -0x1000, 3, 0x1800, 0x1000 + 1, 4096.0, "0x1000", None, True):
            with self.assertRaises(BadAlignmentError):
                layout.validate_alignment(alignment)


class ComputeLayoutTest(unittest.TestCase):
    """Tests for compute_layout on real payload files."""

    def setUp(self) -> None:
        """Creates the payload files."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = write_payloads(self.temp_dir.name, PAYLOAD_SIZES)

    def tearDown(self) -> None:
        """Removes the payload files."""
        self.temp_dir.cleanup()

    def test_example_with_strict_policy(self) -> None:
        """Stub ends on 0x2000 and .osrel is 100 bytes.

        The strict rule skips the aligned end, so .osrel lands on 0x3000 and
        .cmdline on the boundary after 0x3000 + 100, 0x4000.
        """
        plan = layout.compute_layout(STUB_TABLE, self.config)
        self.assertEqual(plan.get(".osrel").virtual_offset, 0x3000)
        self.assertEqual(plan.get(".cmdline").virtual_offset, 0x4000)

    def test_example_with_stay_policy(self) -> None:
        """Stub ends on 0x2000 and .osrel is 100 bytes.

        The stay rule keeps the aligned end, so .osrel lands on 0x2000 and
        .cmdline on 0x3000.
        """
        config = LayoutConfig(payloads=self.config.payloads, policy=STAY)
        plan = layout.compute_layout(STUB_TABLE, config)
        self.assertEqual(plan.get(".osrel").virtual_offset, 0x2000)
        self.assertEqual(plan.get(".cmdline").virtual_offset, 0x3000)

    def test_full_strict_layout(self) -> None:
        """Every section of the plan, as the legacy script placed them."""
        plan = layout.compute_layout(STUB_TABLE, self.config)
        self.assertEqual(
            plan.offsets(),
            [
                (".osrel", "0x3000"),
                (".cmdline", "0x4000"),
                (".splash", "0x5000"),
                (".initrd", "0x8000"),
                (".linux", "0x109000"),
            ],
        )
        self.assertEqual(plan.alignment, 0x1000)
        self.assertEqual(plan.policy, STRICT)
        self.assertEqual(len(plan), 5)

    def test_boundary_single_section_of_one_alignment_unit(self) -> None:
        """A stub with one section of exactly one alignment unit.

        With the stay rule .osrel starts right at the end of that section,
        with the strict rule one unit later.
        """
        stub = StubSectionTable(sections=(StubSection(".text", 0x1000, 0x1000),), alignment=0x1000)
        stay = layout.compute_layout(stub, LayoutConfig(payloads=self.config.payloads, policy=STAY))
        strict = layout.compute_layout(stub, self.config)
        self.assertEqual(stay.get(".osrel").virtual_offset, 0x2000)
        self.assertEqual(strict.get(".osrel").virtual_offset, 0x3000)

    def test_unaligned_stub_end_is_rounded_up_by_both_policies(self) -> None:
        """Both rules agree when the stub does not end on a boundary."""
        stub = StubSectionTable(sections=(StubSection(".text", 0x1000, 0x1234),), alignment=0x1000)
        for policy in AlignmentPolicy:
            plan = layout.compute_layout(stub, LayoutConfig(payloads=self.config.payloads, policy=policy))
            self.assertEqual(plan.get(".osrel").virtual_offset, 0x3000)

    def test_highest_stub_section_wins(self) -> None:
        """The layout starts after the section that ends last, not the last listed."""
        stub = StubSectionTable(
            sections=(StubSection(".data", 0x8000, 0x10), StubSection(".text", 0x1000, 0x100)), alignment=0x1000
        )
        plan = layout.compute_layout(stub, LayoutConfig(payloads=self.config.payloads, policy=STAY))
        self.assertEqual(plan.get(".osrel").virtual_offset, 0x9000)

    def test_stub_without_sections_starts_at_zero(self) -> None:
        """A stub with no sections ends at 0."""
        stub = StubSectionTable(sections=(), alignment=0x1000)
        self.assertEqual(stub.last_end, 0)
        plan = layout.compute_layout(stub, LayoutConfig(payloads=self.config.payloads, policy=STAY))
        self.assertEqual(plan.get(".osrel").virtual_offset, 0)
        plan = layout.compute_layout(stub, self.config)
        self.assertEqual(plan.get(".osrel").virtual_offset, 0x1000)

    def test_missing_splash_fails_with_its_path(self) -> None:
        """A missing .splash file aborts the computation and names the path."""
        missing = os.path.join(self.temp_dir.name, "does_not_exist.bmp")
        payloads = tuple((name, missing if name == ".splash" else path) for name, path in self.config.payloads)
        with self.assertRaises(MissingFileError) as context:
            layout.compute_layout(STUB_TABLE, LayoutConfig(payloads=payloads))
        self.assertEqual(context.exception.section, ".splash")
        self.assertEqual(context.exception.path, missing)
        self.assertIn(missing, str(context.exception))

    def test_directory_is_not_a_payload(self) -> None:
        """A payload path must be a regular file."""
        payloads = tuple(
            (name, self.temp_dir.name if name == ".initrd" else path) for name, path in self.config.payloads
        )
        with self.assertRaises(MissingFileError) as context:
            layout.compute_layout(STUB_TABLE, LayoutConfig(payloads=payloads))
        self.assertEqual(context.exception.section, ".initrd")

    def test_unreadable_splash_fails_with_its_path(self) -> None:
        """A payload that can not be read is reported like a missing one."""
        splash = dict(self.config.payloads)[".splash"]
        with patch("ukitool.uki.layout.os.access", side_effect=lambda path, mode: path != splash):
            with self.assertRaises(MissingFileError) as context:
                layout.compute_layout(STUB_TABLE, self.config)
        self.assertEqual(context.exception.section, ".splash")
        self.assertEqual(context.exception.path, splash)

    def test_bad_stub_alignment(self) -> None:
        """A stub alignment that is not a power of two fails before any file is read."""
        stub = StubSectionTable(sections=STUB_SECTIONS, alignment=0x1800)
        with self.assertRaises(BadAlignmentError):
            layout.compute_layout(stub, self.config)

        stub = StubSectionTable(sections=STUB_SECTIONS, alignment=0)
        with self.assertRaises(BadAlignmentError):
            layout.compute_layout(stub, self.config)

    def test_payloads_must_be_in_layout_order(self) -> None:
        """Reordered or missing payloads are rejected."""
        reordered = tuple(reversed(self.config.payloads))
        with self.assertRaises(ValueError):
            layout.compute_layout(STUB_TABLE, LayoutConfig(payloads=reordered))
        with self.assertRaises(ValueError):
            layout.compute_layout(STUB_TABLE, LayoutConfig(payloads=self.config.payloads[:4]))

    def test_from_paths_keeps_layout_order(self) -> None:
        """LayoutConfig.from_paths pairs every path with its section."""
        config = LayoutConfig.from_paths("o", "c", "s", "i", "l", policy=STAY)
        self.assertEqual(
            config.payloads,
            ((".osrel", "o"), (".cmdline", "c"), (".splash", "s"), (".initrd", "i"), (".linux", "l")),
        )
        self.assertEqual(config.policy, STAY)

    def test_calculation_is_repeatable(self) -> None:
        """Identical inputs give identical plans."""
        first = layout.compute_layout(STUB_TABLE, self.config)
        second = layout.compute_layout(STUB_TABLE, self.config)
        self.assertEqual(first, second)

    def test_plan_lookup_of_unknown_section(self) -> None:
        """LayoutPlan.get raises KeyError for names not in the plan."""
        plan = layout.compute_layout(STUB_TABLE, self.config)
        with self.assertRaises(KeyError):
            plan.get(".text")


class CheckOverlapsTest(unittest.TestCase):
    """Tests for check_overlaps."""

    def test_payload_over_stub_section(self) -> None:
        """A payload inside a stub section is reported."""
        sections = (SectionSpec(".osrel", "osrel", 0x100, 0x1800),)
        with self.assertRaises(OverlapDetectedError) as context:
            layout.check_overlaps(STUB_SECTIONS, sections)
        self.assertIn(".osrel", str(context.exception))
        self.assertIn(".text", str(context.exception))
        self.assertIn("0x1800", str(context.exception))

    def test_payload_over_payload(self) -> None:
        """Two payloads sharing addresses are reported."""
        sections = (
            SectionSpec(".osrel", "osrel", 0x2000, 0x3000),
            SectionSpec(".cmdline", "cmdline", 0x10, 0x4000),
        )
        with self.assertRaises(OverlapDetectedError) as context:
            layout.check_overlaps(STUB_SECTIONS, sections)
        self.assertEqual(context.exception.first, ".osrel")
        self.assertEqual(context.exception.second, ".cmdline")

    def test_adjacent_and_empty_ranges_do_not_overlap(self) -> None:
        """Touching ranges and empty sections are fine."""
        sections = (
            SectionSpec(".osrel", "osrel", 0x1000, 0x2000),
            SectionSpec(".cmdline", "cmdline", 0, 0x3000),
            SectionSpec(".splash", "splash", 0x1000, 0x3000),
        )
        layout.check_overlaps(STUB_SECTIONS, sections)


def _offsets(sizes: list, policy: AlignmentPolicy, alignment: int = 0x1000) -> list:
    return layout.plan_offsets(STUB_SECTIONS, alignment, sizes, policy)


@pytest.mark.parametrize("policy", list(AlignmentPolicy))
def test_offsets_are_aligned_and_disjoint(policy):
    """Every offset is a multiple of the alignment and no ranges intersect."""
    for alignment in (0x200, 0x1000):
        for sizes in itertools.product(SIZE_GRID, repeat=3):
            sizes = list(sizes) + [0x10, 0x20]
            offsets = _offsets(sizes, policy, alignment)
            assert all(offset % alignment == 0 for offset in offsets)
            assert all(a < b for a, b in zip(offsets, offsets[1:]))

            sections = tuple(
                SectionSpec(name, name, size, offset)
                for name, size, offset in zip(layout.PAYLOAD_SECTIONS, sizes, offsets)
            )
            layout.check_overlaps(STUB_SECTIONS, sections)


@pytest.mark.parametrize("policy", list(AlignmentPolicy))
def test_offsets_strictly_increase_after_empty_payloads(policy):
    """Both rules move forward after every payload, empty ones included."""
    for sizes in itertools.product(SIZE_GRID, repeat=3):
        offsets = _offsets(list(sizes) + [0, 1], policy)
        assert all(a < b for a, b in zip(offsets, offsets[1:]))


def test_stay_gives_an_empty_payload_its_own_alignment_unit():
    """An empty .cmdline under the stay rule does not share its offset with .splash."""
    assert _offsets([100, 0, 10, 10, 10], STAY) == [0x2000, 0x3000, 0x4000, 0x5000, 0x6000]
    assert _offsets([100, 0, 10, 10, 10], STRICT) == [0x3000, 0x4000, 0x5000, 0x6000, 0x7000]


@pytest.mark.parametrize("policy", list(AlignmentPolicy))
def test_growing_a_payload_never_moves_earlier_sections(policy):
    """Growing payload i keeps offsets up to i and never pulls later ones back."""
    base = [100, 40, 0x2345, 0x1000, 0x80000]
    before = _offsets(base, policy)
    for index in range(len(base)):
        for k in (1, 0xFFF, 0x1000, 0x1001, 0x3000):
            grown = list(base)
            grown[index] += k
            after = _offsets(grown, policy)
            assert after[: index + 1] == before[: index + 1]
            assert all(a >= b for a, b in zip(after[index + 1:], before[index + 1:]))


@pytest.mark.parametrize("policy", list(AlignmentPolicy))
def test_growing_by_whole_alignment_units_shifts_by_exactly_k(policy):
    """Growing a payload by a multiple of the alignment shifts every later section by the same amount."""
    base = [100, 40, 0x2345, 0x1000, 0x80000]
    before = _offsets(base, policy)
    for index in range(len(base)):
        for k in (0x1000, 0x3000):
            grown = list(base)
            grown[index] += k
            after = _offsets(grown, policy)
            assert [a - b for a, b in zip(after[index + 1:], before[index + 1:])] == [k] * (len(base) - index - 1)


def test_compute_layout_logs_offsets(caplog, tmp_path):
    """The offsets of the plan are logged at debug level."""
    config = write_payloads(str(tmp_path), PAYLOAD_SIZES)
    with caplog.at_level("DEBUG"):
        layout.compute_layout(STUB_TABLE, config)
    assert ".osrel: offset 0x3000 size 0x64" in caplog.text
