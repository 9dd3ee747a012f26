# @file sb_keys_tool.py
# This module contains the CLI interface for creating a custom UEFI Secure
# Boot key hierarchy (PK, KEK, db).
#
##
# Copyright (C) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""CLI interface for creating a custom UEFI Secure Boot key hierarchy."""

import argparse
import getpass
import logging
import os
import sys

from ukitool import uki_logging
from ukitool.secureboot import key_hierarchy

TOOL_DESCRIPTION = """
Secure Boot Keys Tool creates the keys (PK, KEK, db) needed to set up UEFI
Secure Boot with custom keys. It produces both EFI Signature Lists (.esl) and
signed Authenticated Variables (.auth). Check your firmware documentation to
see which of them you need to enroll.

Requires efitools (cert-to-efi-sig-list, sign-efi-sig-list).

An example call might look like:
%s --common-name "My Host" --output-dir /path/to/keys
""" % (os.path.basename(sys.argv[0]),)

ENROLLMENT_INSTRUCTIONS = """
Next Steps: Enroll the appropriate files in your UEFI firmware.
=================================================================
Depending on your firmware, you will need either the EFI Signature
Lists (.esl) or the signed Authenticated Variables (.auth).

    - Platform Key (PK):      esl/PK.esl or auth/PK.auth
    - Key Exchange Key (KEK): esl/KEK.esl or auth/KEK.auth
    - Signature DB Key (db):  esl/db.esl or auth/db.auth

Sign the UKI with keys/db.key and certs/db.crt.
================================================================="""

PASSWORD_WARNING = (
    "IMPORTANT: Store the passwords for your .key files in a secure location. "
    "If you lose them, you will not be able to sign new binaries or update your keys."
)


def get_cli_options(args: list = None) -> argparse.Namespace:
    """Parse the primary options from the command line."""
    parser = argparse.ArgumentParser(description=TOOL_DESCRIPTION, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--common-name", dest="common_name", default=None, help="common name (CN) for the keys")
    parser.add_argument("--output-dir", dest="output_dir", default=os.getcwd(), help="where the keys are created")
    parser.add_argument(
        "--days", type=int, default=key_hierarchy.DEFAULT_VALID_DAYS, help="validity of the certificates in days"
    )
    parser.add_argument(
        "--key-size", dest="key_size", type=int, default=key_hierarchy.DEFAULT_KEY_SIZE, help="RSA key size in bits"
    )
    parser.add_argument(
        "--no-password",
        dest="no_password",
        default=False,
        action="store_true",
        help="do not encrypt the private keys",
    )
    parser.add_argument("-v", "--verbose", default=False, action="store_true", help="verbose output")
    return parser.parse_args(args=args)


def prompt_common_name() -> str:
    """Asks for the common name until a non-empty one is entered."""
    common_name = ""
    while common_name == "":
        common_name = input("Enter a Common Name (CN) for the keys: ").strip()
    return common_name


def prompt_password(key_name: str) -> bytes:
    """Asks for a private key password twice.

    Raises:
        (ValueError): the passwords are empty or do not match
    """
    password = getpass.getpass(f"Create a password for the {key_name} private key: ")
    if password == "":
        raise ValueError(f"Empty password for {key_name}. Use --no-password to create unencrypted keys.")
    if getpass.getpass(f"Verify the {key_name} password: ") != password:
        raise ValueError(f"The {key_name} passwords do not match.")
    return password.encode("utf-8")


def run(args: argparse.Namespace) -> int:
    """Runs the tool with parsed arguments and returns the exit code."""
    common_name = args.common_name or prompt_common_name()
    logging.info(f"Using Common Name: '{common_name}'")

    passwords = {}
    if not args.no_password:
        for key in key_hierarchy.KEY_HIERARCHY:
            passwords[key.name] = prompt_password(key.name)

    uki_logging.log_section("Creating Secure Boot keys")
    paths = key_hierarchy.create_key_hierarchy(
        common_name,
        os.path.abspath(args.output_dir),
        passwords=passwords,
        valid_days=args.days,
        key_size=args.key_size,
    )
    for key in key_hierarchy.KEY_HIERARCHY:
        logging.debug(f"{key.name}: {paths[key.name]}")

    uki_logging.log_progress("Success! All keys and signatures created and organized.")
    logging.info(ENROLLMENT_INSTRUCTIONS)
    if len(passwords) > 0:
        logging.warning(PASSWORD_WARNING)
    return 0


def main() -> None:
    """Main entry point into the secure boot keys tool."""
    args = get_cli_options()

    logger = logging.getLogger("")
    logger.setLevel(logging.DEBUG)
    uki_logging.setup_section_level()
    console = uki_logging.setup_console_logging(logging.DEBUG if args.verbose else logging.INFO, isVerbose=args.verbose)

    try:
        ret = run(args)
    except (ValueError, RuntimeError, OSError) as exc:
        logging.error(str(exc))
        ret = 1
    finally:
        uki_logging.stop_logging(console)

    sys.exit(ret)


if __name__ == "__main__":
    main()
