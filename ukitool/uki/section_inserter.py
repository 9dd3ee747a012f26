# @file section_inserter.py
# Splices the payload sections of a LayoutPlan into a copy of an EFI stub.
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Splices the payload sections of a LayoutPlan into a copy of an EFI stub."""

import logging
import os

from edk2toollib.utility_functions import RunCmd

from ukitool.uki.layout import LayoutPlan


class SectionInserter(object):
    """Interface for writing a stub plus payload sections to a new image."""

    def insert(self, stub_path: str, plan: LayoutPlan, output_path: str) -> None:
        """Writes stub_path with every section of plan added to output_path.

        The stub itself is never modified.

        WARNING: Implement in a subclass.
        """
        raise NotImplementedError("Must Override SectionInserter")


def build_objcopy_parameters(stub_path: str, plan: LayoutPlan, output_path: str) -> list[str]:
    """Returns the objcopy parameters that add every section of plan to the stub.

    One --add-section / --change-section-vma pair per section, in plan order,
    followed by the input stub and the output image.
    """
    params = []
    for section in plan:
        params += ["--add-section", f'{section.name}="{section.source_path}"']
        params += ["--change-section-vma", f"{section.name}={section.vma}"]
    params += [f'"{stub_path}"', f'"{output_path}"']
    return params


class ObjcopySectionInserter(SectionInserter):
    """Adds the sections with binutils objcopy."""

    def __init__(self, objcopy: str = "objcopy") -> None:
        """Inits the inserter with the objcopy executable to use."""
        self.objcopy = objcopy

    def insert(self, stub_path: str, plan: LayoutPlan, output_path: str) -> None:
        """Writes stub_path with every section of plan added to output_path.

        Raises:
            (RuntimeError): objcopy failed. Nothing is left at output_path.
        """
        params = build_objcopy_parameters(stub_path, plan, output_path)
        ret = RunCmd(self.objcopy, " ".join(params))
        if ret != 0:
            if os.path.isfile(output_path):
                os.remove(output_path)
            raise RuntimeError(f"{self.objcopy} returned with error: {ret}!")
        logging.info(f"Unsigned UKI created at {output_path}")
