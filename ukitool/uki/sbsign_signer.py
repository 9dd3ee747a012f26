# @file sbsign_signer.py
# This module contains the signing interface for sbsigntools. It takes in the
# signer_options dictionary used by uki_tool and uki_builder.
#
##
# Copyright (C) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Signing interface for sbsign from sbsigntools.

Signer options:
    key_file (str): PEM private key of the Signature Database (db) key. Required.
    cert_file (str): PEM certificate of the db key. Required.
    engine (str): OpenSSL engine that holds the key. Optional.

sbsign prompts for the key password on the terminal when the key is encrypted.
"""

import logging
import os

from edk2toollib.utility_functions import RunCmd

SBSIGN = "sbsign"
SBVERIFY = "sbverify"
REQUIRED_SIGNER_OPTIONS = ("key_file", "cert_file")


def check_signer_options(signer_options: dict) -> None:
    """Validates the signer options.

    Raises:
        (ValueError): a required option is missing, or a file it names does not exist
    """
    missing = [option for option in REQUIRED_SIGNER_OPTIONS if not signer_options.get(option)]
    if len(missing) > 0:
        raise ValueError(f"Must supply {', '.join(missing)} in signer_options for sbsign!")

    for option in REQUIRED_SIGNER_OPTIONS:
        if not os.path.isfile(signer_options[option]):
            raise ValueError(f"Signing {option} '{signer_options[option]}' not found.")


def sign(input_path: str, output_path: str, signer_options: dict) -> None:
    """Primary signing interface.

    Args:
        input_path (str): the unsigned image
        output_path (str): where the signed image is written
        signer_options (dict): dictionary containing signer options

    Raises:
        (ValueError): Unsupported or missing signer options
        (RuntimeError): sbsign returned with error
    """
    check_signer_options(signer_options)

    params = ["--key", f"\"{signer_options['key_file']}\""]
    params += ["--cert", f"\"{signer_options['cert_file']}\""]
    if "engine" in signer_options:
        params += ["--engine", signer_options["engine"]]
    params += ["--output", f'"{output_path}"', f'"{input_path}"']

    logging.info(f"Signing {input_path} with {signer_options['key_file']}")
    ret = RunCmd(SBSIGN, " ".join(params))
    if ret != 0:
        if os.path.isfile(output_path):
            os.remove(output_path)
        raise RuntimeError(f"sbsign returned with error: {ret}!")


def verify(signed_path: str, signer_options: dict) -> bool:
    """Checks the signature of signed_path against the db certificate.

    Returns:
        (bool): True when sbverify accepts the signature
    """
    if not signer_options.get("cert_file"):
        raise ValueError("Must supply a cert_file in signer_options for sbverify!")
    params = f"--cert \"{signer_options['cert_file']}\" \"{signed_path}\""
    return RunCmd(SBVERIFY, params, logging_level=logging.DEBUG) == 0
