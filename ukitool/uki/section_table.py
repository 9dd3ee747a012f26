# @file section_table.py
# Readers for the section table and section alignment of an EFI stub.
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Readers for the section table and section alignment of an EFI stub.

A reader turns a stub binary into a `StubSectionTable`. Two are provided:

- `ObjdumpSectionTableReader` asks binutils objdump, the same tool the layout
  was historically computed from.
- `PefileSectionTableReader` parses the PE/COFF headers with pefile and needs
  no external tool.
"""

import logging
import re
from io import StringIO

import pefile
from edk2toollib.utility_functions import RunCmd

from ukitool.uki.layout import ParseError, StubSection, StubSectionTable

#   0 .text         0000c3a8  0000000000004000  0000000000004000  00000400  2**4
SECTION_HEADER_REGEX = re.compile(
    r"^\s*(?P<idx>\d+)\s+(?P<name>\S+)\s+(?P<size>[0-9a-fA-F]+)\s+(?P<vma>[0-9a-fA-F]+)"
    r"\s+(?P<lma>[0-9a-fA-F]+)\s+(?P<file_off>[0-9a-fA-F]+)\s+2\*\*(?P<algn>\d+)\s*$",
    re.MULTILINE,
)
# SectionAlignment	00001000
SECTION_ALIGNMENT_REGEX = re.compile(r"^\s*SectionAlignment\s+(?P<value>[0-9a-fA-F]+)\s*$", re.MULTILINE)

OBJDUMP_READER = "objdump"
PEFILE_READER = "pefile"


def parse_section_headers(text: str) -> tuple:
    """Parses the output of `objdump -h` into StubSections.

    Raises:
        (ParseError): no section rows in the output
    """
    sections = tuple(
        StubSection(name=match["name"], virtual_address=int(match["vma"], 16), size=int(match["size"], 16))
        for match in SECTION_HEADER_REGEX.finditer(text)
    )
    if len(sections) == 0:
        raise ParseError("No sections found in the stub section table")
    return sections


def parse_section_alignment(text: str) -> int:
    """Parses the SectionAlignment field out of the output of `objdump -p`.

    Raises:
        (ParseError): the field is absent
    """
    match = SECTION_ALIGNMENT_REGEX.search(text)
    if match is None:
        raise ParseError("SectionAlignment field not found in the stub headers")
    return int(match["value"], 16)


class SectionTableReader(object):
    """Interface for reading the section table of a stub binary."""

    def read(self, stub_path: str) -> StubSectionTable:
        """Returns the section table and alignment of the stub.

        WARNING: Implement in a subclass.
        """
        raise NotImplementedError("Must Override SectionTableReader")


class ObjdumpSectionTableReader(SectionTableReader):
    """Reads the section table through `objdump -h` and `objdump -p`."""

    def __init__(self, objdump: str = "objdump") -> None:
        """Inits the reader with the objdump executable to use."""
        self.objdump = objdump

    def _run(self, flag: str, stub_path: str) -> str:
        out = StringIO()
        ret = RunCmd(self.objdump, f'{flag} "{stub_path}"', outstream=out, logging_level=logging.DEBUG)
        if ret != 0:
            raise RuntimeError(f"{self.objdump} {flag} {stub_path} returned with error: {ret}!")
        return out.getvalue()

    def read(self, stub_path: str) -> StubSectionTable:
        """Returns the section table and alignment of the stub.

        Raises:
            (ParseError): the objdump output has no sections or no alignment
            (RuntimeError): objdump failed
        """
        alignment = parse_section_alignment(self._run("-p", stub_path))
        sections = parse_section_headers(self._run("-h", stub_path))
        logging.debug(f"{stub_path}: {len(sections)} sections, alignment 0x{alignment:x}")
        return StubSectionTable(sections=sections, alignment=alignment)


class PefileSectionTableReader(SectionTableReader):
    """Reads the section table straight from the PE/COFF headers.

    Addresses are reported the way objdump reports them, ImageBase plus the
    section RVA. The size of a section is the larger of its virtual size and
    its raw size, so the whole section is covered whichever one the
    firmware maps.
    """

    def read(self, stub_path: str) -> StubSectionTable:
        """Returns the section table and alignment of the stub.

        Raises:
            (ParseError): not a PE/COFF image, or no sections / alignment
        """
        try:
            pe = pefile.PE(stub_path, fast_load=True)
        except pefile.PEFormatError as exc:
            raise ParseError(f"{stub_path} is not a valid PE/COFF image: {exc}") from exc

        try:
            alignment = pe.OPTIONAL_HEADER.SectionAlignment
            image_base = pe.OPTIONAL_HEADER.ImageBase
            sections = tuple(
                StubSection(
                    name=section.Name.rstrip(b"\x00").decode("utf-8", errors="replace"),
                    virtual_address=image_base + section.VirtualAddress,
                    size=max(section.Misc_VirtualSize, section.SizeOfRawData),
                )
                for section in pe.sections
            )
        except AttributeError as exc:
            raise ParseError(f"{stub_path} has no optional header") from exc
        finally:
            pe.close()

        if len(sections) == 0:
            raise ParseError(f"No sections found in {stub_path}")
        logging.debug(f"{stub_path}: {len(sections)} sections, alignment 0x{alignment:x}")
        return StubSectionTable(sections=sections, alignment=alignment)


def get_reader(name: str) -> SectionTableReader:
    """Returns the reader registered under name ('objdump' or 'pefile')."""
    if name == OBJDUMP_READER:
        return ObjdumpSectionTableReader()
    elif name == PEFILE_READER:
        return PefileSectionTableReader()
    raise ValueError(f"Unknown section table reader: {name}")

