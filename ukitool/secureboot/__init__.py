"""secureboot package.

This package creates the UEFI Secure Boot key hierarchy (PK, KEK, db) and the
signature list / authenticated variable files used to enroll it.

Copyright (c) Microsoft Corporation
SPDX-License-Identifier: BSD-2-Clause-Patent
"""
