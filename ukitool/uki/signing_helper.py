# @file signing_helper.py
# This module contains code to help with the selection and loading of a signer module.
# These signer modules can be built-in to the ukitool package, loaded from other Pip
# or Python modules that are on the current pypath, or passed as a file path to a
# local Python module that should be dynamically loaded.
#
##
# Copyright (C) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Selection and loading of the module that signs a combined UKI.

A signer module exposes `sign(input_path, output_path, signer_options)` and
writes a signed copy of input_path to output_path.
"""

import importlib
from types import ModuleType
from typing import Optional

from edk2toollib.utility_functions import import_module_by_file_name

from ukitool.uki import sbsign_signer

# Valid types.
SBSIGN_SIGNER = "sbsign"
PYPATH_MODULE_SIGNER = "pymodule"
LOCAL_MODULE_SIGNER = "local_module"


def get_signer(type: str, specifier: Optional[str] = None) -> ModuleType:
    """Based on the type and optional specifier, load a signer module and return it.

    if type is PYPATH_MODULE_SIGNER, the specifier should be the Python module
        package/namespace path
        example: ukitool.uki.sbsign_signer

    if the type is LOCAL_MODULE_SIGNER, the specifier should be a filesystem
        path to a Python module that can be loaded as the signer

    Raises:
        (ValueError): unknown signer type, or the module has no sign()
    """
    if type == SBSIGN_SIGNER:
        signer = sbsign_signer
    elif type == PYPATH_MODULE_SIGNER:
        signer = importlib.import_module(specifier)
    elif type == LOCAL_MODULE_SIGNER:
        signer = import_module_by_file_name(specifier)
    else:
        raise ValueError(f"Unknown signer type: {type}")

    if not callable(getattr(signer, "sign", None)):
        raise ValueError(f"Signer module {signer.__name__} does not provide sign()")
    return signer
