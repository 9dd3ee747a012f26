"""uki package.

This package builds and signs Unified Kernel Images (UKI) from an EFI stub.

Modules:
    - layout: Computes aligned, non-overlapping virtual offsets for the UKI payload sections.
    - section_table: Reads the section table and section alignment of an EFI stub.
    - section_inserter: Splices the payload files into a copy of the stub.
    - signing_helper / sbsign_signer: Loads the signer module and signs the combined image.
    - uki_builder / uki_tool: The build pipeline and its command line interface.

Copyright (c) Microsoft Corporation
SPDX-License-Identifier: BSD-2-Clause-Patent
"""
