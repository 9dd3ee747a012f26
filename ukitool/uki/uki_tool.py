# @file uki_tool.py
# This module contains the CLI interface for building, signing and deploying a
# Unified Kernel Image (UKI) from an EFI stub and the current kernel.
#
##
# Copyright (C) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""CLI interface for building, signing and deploying a Unified Kernel Image."""

import argparse
import copy
import logging
import os
import sys

import yaml

from ukitool import uki_logging
from ukitool.uki import signing_helper, uki_builder
from ukitool.uki.layout import AlignmentPolicy, UkiLayoutError
from ukitool.uki.section_inserter import ObjcopySectionInserter
from ukitool.uki.section_table import OBJDUMP_READER, PEFILE_READER, get_reader

TOOL_DESCRIPTION = """
UKI Tool builds a Unified Kernel Image from the systemd EFI stub, os-release,
a kernel command line, a splash image and the newest kernel / initrd found in
/boot. The image is signed for Secure Boot with the db key and copied into the
EFI system partition.

An example call might look like:
%s -o /path/to/config.yaml -ds key_file=/path/to/db.key -ds cert_file=/path/to/db.crt
    /path/to/output
""" % (os.path.basename(sys.argv[0]),)


def get_cli_options(args: list = None) -> argparse.Namespace:
    """Parse the primary options from the command line.

    If provided, will take the options as an array in the first parameter.
    """
    parser = argparse.ArgumentParser(description=TOOL_DESCRIPTION, formatter_class=argparse.RawDescriptionHelpFormatter)

    signer_group = parser.add_mutually_exclusive_group()
    signer_group.add_argument("--builtin_signer", choices=[signing_helper.SBSIGN_SIGNER])
    signer_group.add_argument(
        "--local_signer", help="a filesystem path to a python module that can be loaded as the active signer"
    )
    signer_group.add_argument(
        "--module_signer", help="a python dot-path to a signer module that can be loaded from the current pypath"
    )

    options_help = "add an option to the corresponding set. format is <option_name>=<option_value>"
    parser.add_argument("-du", action="append", dest="uki_options", type=str, default=[], help=options_help)
    parser.add_argument("-ds", action="append", dest="signer_options", type=str, default=[], help=options_help)

    parser.add_argument(
        "-o",
        dest="options_file",
        type=argparse.FileType("r"),
        help="a filesystem path to a json/yaml file to load with default options. will be overriden by any options parameters",  # noqa
    )
    parser.add_argument(
        "-f",
        dest="save_final_options",
        default=False,
        action="store_true",
        help="optional flag to request that final tool options be saved in a file in the output directory",
    )

    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in AlignmentPolicy],
        default=None,
        help="section alignment rule. default is strict-next-boundary, which matches images built by uki_create.sh",
    )
    parser.add_argument(
        "--reader",
        choices=[OBJDUMP_READER, PEFILE_READER],
        default=OBJDUMP_READER,
        help="how the stub section table is read",
    )
    parser.add_argument(
        "--plan-only",
        dest="plan_only",
        default=False,
        action="store_true",
        help="print the section offsets and exit without building anything. The cmdline file must already exist",
    )
    parser.add_argument(
        "--skip-deploy",
        dest="skip_deploy",
        default=False,
        action="store_true",
        help="do not copy the signed image into the boot directory",
    )
    parser.add_argument("-v", "--verbose", default=False, action="store_true", help="verbose output")
    parser.add_argument("-l", dest="log_dir", default=None, help="directory to write a text log to")

    parser.add_argument(
        "output_dir",
        help="a filesystem path to the directory to save output files. if directory does not exist, entire directory path will be created",  # noqa
    )

    return parser.parse_args(args=args)


def load_options_file(in_file: object) -> dict:
    """Loads a json-/yaml-encoded options file and returns the contents in a dictionary."""
    if not hasattr(in_file, "read"):
        return None

    return yaml.safe_load(in_file)


def update_options(file_options: dict, uki_options: list, signer_options: list) -> dict:
    """Merges the command line options into the options loaded from a file.

    Command line options are lists of strings that look like
    '<option_name>=<option_value>' and win over the file options.

    Raises:
        (ValueError): an option is not in name=value form
    """
    if file_options is not None:
        updated_options = copy.deepcopy(file_options)
    else:
        updated_options = {}
    updated_options["uki"] = updated_options.get("uki") or {}
    updated_options["signer"] = updated_options.get("signer") or {}

    for section, options in (("uki", uki_options), ("signer", signer_options)):
        for option in options:
            if "=" not in option:
                raise ValueError(f"Option '{option}' is not in <option_name>=<option_value> form")
            (key, value) = option.split("=", 1)
            updated_options[section][key] = value

    return updated_options


def get_signer_from_args(args: argparse.Namespace) -> object:
    """Loads the signer module selected on the command line. Defaults to sbsign."""
    if args.module_signer is not None:
        return signing_helper.get_signer(signing_helper.PYPATH_MODULE_SIGNER, args.module_signer)
    elif args.local_signer is not None:
        return signing_helper.get_signer(signing_helper.LOCAL_MODULE_SIGNER, args.local_signer)
    return signing_helper.get_signer(args.builtin_signer or signing_helper.SBSIGN_SIGNER)


def run(args: argparse.Namespace) -> int:
    """Runs the tool with parsed arguments and returns the exit code."""
    final_options = update_options(load_options_file(args.options_file), args.uki_options, args.signer_options)
    if args.policy is not None:
        final_options["uki"]["policy"] = args.policy
    output_dir = os.path.abspath(args.output_dir)

    if not args.plan_only and not args.skip_deploy and os.geteuid() != 0:
        logging.error("Deploying to the boot directory requires root. Use --skip-deploy to only build.")
        return 1

    uki_logging.log_section("Preparing UKI inputs")
    uki_options = uki_builder.resolve_kernel(final_options["uki"])
    config = uki_builder.UkiBuildConfig.from_options(uki_options, output_dir)
    logging.debug(f"Final options: {final_options}")

    reader = get_reader(args.reader)
    if args.plan_only:
        if not os.path.isfile(config.cmdline_file):
            logging.error(
                f"Kernel command line file {config.cmdline_file} does not exist yet. Run a build first "
                "or pass -du cmdline_file=<path>."
            )
            return 1
        uki_builder.plan_uki(config, reader)
        return 0

    tools = uki_builder.REQUIRED_TOOLS if args.reader == OBJDUMP_READER else ("objcopy", "sbsign", "sbverify")
    uki_builder.check_required_tools(tools)
    os.makedirs(output_dir, exist_ok=True)
    kernel_cmdline = uki_options.get("kernel_cmdline", uki_builder.DEFAULT_KERNEL_CMDLINE)
    uki_builder.ensure_cmdline_file(config.cmdline_file, kernel_cmdline)

    signer = get_signer_from_args(args)
    # fail on bad signer options before anything is built
    if hasattr(signer, "check_signer_options"):
        signer.check_signer_options(final_options["signer"])

    uki_logging.log_section("Building UKI")
    signed_path = uki_builder.build_uki(config, reader, ObjcopySectionInserter(), signer, final_options["signer"])

    if not args.skip_deploy:
        uki_logging.log_section("Deploying UKI")
        uki_builder.deploy_uki(signed_path, config.boot_dir, config.efi_name)

    # If requested, save the final options for provenance.
    if args.save_final_options:
        final_options_file = os.path.join(output_dir, "Final_Uki_Options.yaml")
        with open(final_options_file, "w") as options_file:
            yaml.dump(final_options, options_file, indent=2)

    uki_logging.log_progress(f"Successfully created UKI {signed_path}")
    return 0


def main() -> None:
    """Main entry point into the uki tool."""
    args = get_cli_options()

    logger = logging.getLogger("")
    logger.setLevel(logging.DEBUG)
    uki_logging.setup_section_level()
    console = uki_logging.setup_console_logging(logging.DEBUG if args.verbose else logging.INFO, isVerbose=args.verbose)
    handlers = [console]
    if args.log_dir is not None:
        _, txt_logger = uki_logging.setup_txt_logger(args.log_dir, "uki_tool", logging.DEBUG)
        handlers.append(txt_logger)

    try:
        ret = run(args)
    except (UkiLayoutError, ValueError, RuntimeError, OSError) as exc:
        logging.error(str(exc))
        ret = 1
    finally:
        uki_logging.stop_logging(handlers)

    sys.exit(ret)


if __name__ == "__main__":
    main()
