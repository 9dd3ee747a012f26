# @file uki_builder.py
# This module contains the build pipeline for signed Unified Kernel Images:
# locating the kernel, preparing the command line, computing the layout,
# adding the sections to the stub, signing and deploying.
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Build pipeline for signed Unified Kernel Images.

Everything the pipeline needs is collected into an immutable `UkiBuildConfig`
up front. Host discovery (latest kernel, /proc/cmdline) happens in helpers
that are called before the config is built, never during the layout
computation.
"""

import glob
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from types import ModuleType
from typing import Optional

from ukitool import uki_logging
from ukitool.uki.layout import AlignmentPolicy, LayoutConfig, LayoutPlan, compute_layout
from ukitool.uki.section_inserter import SectionInserter
from ukitool.uki.section_table import SectionTableReader

DEFAULT_STUB = "/usr/lib/systemd/boot/efi/linuxx64.efi.stub"
DEFAULT_OSREL = "/usr/lib/os-release"
DEFAULT_KERNEL_DIR = "/boot"
DEFAULT_BOOT_DIR = "/boot/efi/EFI/pve"
DEFAULT_EFI_NAME = "pve-uki.efi"
DEFAULT_KERNEL_CMDLINE = "ro quiet splash"
DEFAULT_CMDLINE_FILE_NAME = "cmdline"
DEFAULT_SPLASH_FILE_NAME = "splash.bmp"
PROC_CMDLINE = "/proc/cmdline"

KERNEL_PREFIX = "vmlinuz-"
INITRD_PREFIX = "initrd.img-"

REQUIRED_TOOLS = ("objcopy", "objdump", "sbsign", "sbverify")


def version_sort_key(version: str) -> list:
    """Sort key ordering version strings the way `sort -V` does.

    re.split with a capturing group always yields text at even and numbers at
    odd positions, so two keys never compare a str against an int.
    """
    return [int(chunk) if index % 2 else chunk for index, chunk in enumerate(re.split(r"(\d+)", version))]


def find_latest_kernel(kernel_dir: str = DEFAULT_KERNEL_DIR) -> tuple[str, str]:
    """Finds the newest vmlinuz-<version> in kernel_dir.

    Returns:
        (tuple[str, str]): path of the kernel and its version string

    Raises:
        (FileNotFoundError): no kernel in kernel_dir
    """
    kernels = [path for path in glob.glob(os.path.join(kernel_dir, KERNEL_PREFIX + "*")) if os.path.isfile(path)]
    if len(kernels) == 0:
        raise FileNotFoundError(f"Could not find a kernel in {kernel_dir}.")

    latest = max(kernels, key=lambda path: version_sort_key(os.path.basename(path)[len(KERNEL_PREFIX):]))
    version = os.path.basename(latest)[len(KERNEL_PREFIX):]
    logging.info(f"Latest kernel version found: {version}")
    return latest, version


def initrd_for_kernel(kernel_dir: str, version: str) -> str:
    """Returns the initrd path that belongs to a kernel version."""
    return os.path.join(kernel_dir, INITRD_PREFIX + version)


def ensure_cmdline_file(
    path: str, kernel_cmdline: str = DEFAULT_KERNEL_CMDLINE, proc_cmdline: str = PROC_CMDLINE
) -> bool:
    """Creates the kernel command line file if it does not exist yet.

    The root= parameter of the running system is taken from proc_cmdline and
    kernel_cmdline is appended to it. An existing file is left untouched, so
    remove it after changing kernel_cmdline.

    Returns:
        (bool): True if the file was created

    Raises:
        (ValueError): proc_cmdline has no root= parameter
    """
    if os.path.isfile(path):
        return False

    logging.info(f"No cmdline file found, creating one at '{path}'...")
    with open(proc_cmdline, "r") as proc_file:
        tokens = proc_file.read().split()
    root_fs = next((token for token in tokens if token.startswith("root=")), None)
    if root_fs is None:
        raise ValueError(f"Could not determine root filesystem from {proc_cmdline}.")

    with open(path, "w") as cmdline_file:
        cmdline_file.write(" ".join([root_fs] + kernel_cmdline.split()))
    return True


def check_required_tools(tools: tuple = REQUIRED_TOOLS) -> None:
    """Verifies that every external tool is on the PATH.

    Raises:
        (RuntimeError): lists the missing tools
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if len(missing) > 0:
        raise RuntimeError(f"Required command(s) not found: {', '.join(missing)}. Please install them.")


@dataclass(frozen=True)
class UkiBuildConfig:
    """Every path and option of one UKI build."""

    stub: str
    osrel: str
    cmdline_file: str
    splash: str
    initrd: str
    kernel: str
    output_dir: str
    boot_dir: str = DEFAULT_BOOT_DIR
    efi_name: str = DEFAULT_EFI_NAME
    policy: AlignmentPolicy = AlignmentPolicy.STRICT_NEXT_BOUNDARY

    @classmethod
    def from_options(cls, options: dict, output_dir: str) -> "UkiBuildConfig":
        """Builds a config from the merged uki options.

        `kernel` and `initrd` must already be resolved, see resolve_kernel().
        Relative cmdline and splash defaults live in output_dir.

        Raises:
            (ValueError): kernel / initrd missing, or an unknown policy
        """
        missing = [option for option in ("kernel", "initrd") if not options.get(option)]
        if len(missing) > 0:
            raise ValueError(f"Missing required uki options: {', '.join(missing)}")

        return cls(
            stub=options.get("stub", DEFAULT_STUB),
            osrel=options.get("osrel", DEFAULT_OSREL),
            cmdline_file=options.get("cmdline_file", os.path.join(output_dir, DEFAULT_CMDLINE_FILE_NAME)),
            splash=options.get("splash", os.path.join(output_dir, DEFAULT_SPLASH_FILE_NAME)),
            initrd=options["initrd"],
            kernel=options["kernel"],
            output_dir=output_dir,
            boot_dir=options.get("boot_dir", DEFAULT_BOOT_DIR),
            efi_name=options.get("efi_name", DEFAULT_EFI_NAME),
            policy=AlignmentPolicy(options.get("policy", AlignmentPolicy.STRICT_NEXT_BOUNDARY.value)),
        )

    @property
    def layout_config(self) -> LayoutConfig:
        """The payload files in layout order."""
        return LayoutConfig.from_paths(
            osrel=self.osrel,
            cmdline=self.cmdline_file,
            splash=self.splash,
            initrd=self.initrd,
            linux=self.kernel,
            policy=self.policy,
        )

    @property
    def signed_path(self) -> str:
        """Where the signed image is written."""
        return os.path.join(self.output_dir, self.efi_name)


def resolve_kernel(options: dict) -> dict:
    """Fills in the kernel and initrd options from the kernel directory when unset.

    Returns:
        (dict): a copy of options with `kernel` and `initrd` set
    """
    resolved = dict(options)
    kernel_dir = resolved.get("kernel_dir", DEFAULT_KERNEL_DIR)
    if not resolved.get("kernel"):
        resolved["kernel"], version = find_latest_kernel(kernel_dir)
        resolved.setdefault("initrd", initrd_for_kernel(kernel_dir, version))
    elif not resolved.get("initrd"):
        basename = os.path.basename(resolved["kernel"])
        if not basename.startswith(KERNEL_PREFIX):
            raise ValueError(f"Cannot derive the initrd of kernel '{resolved['kernel']}', set the initrd option.")
        resolved["initrd"] = initrd_for_kernel(os.path.dirname(resolved["kernel"]), basename[len(KERNEL_PREFIX):])
    return resolved


def plan_uki(config: UkiBuildConfig, reader: SectionTableReader) -> LayoutPlan:
    """Reads the stub and computes the layout, without writing anything.

    Raises:
        (FileNotFoundError): the stub does not exist
        (UkiLayoutError): the layout can not be computed
    """
    if not os.path.isfile(config.stub):
        raise FileNotFoundError(f"Required file not found: {config.stub}")

    logging.info("Calculating section offsets...")
    stub_table = reader.read(config.stub)
    plan = compute_layout(stub_table, config.layout_config)
    for name, vma in plan.offsets():
        logging.info(f"  {name:<9} {vma}")
    return plan


def build_uki(
    config: UkiBuildConfig,
    reader: SectionTableReader,
    inserter: SectionInserter,
    signer: ModuleType,
    signer_options: dict,
) -> str:
    """Builds and signs the UKI described by config.

    The unsigned image only exists in a temporary directory. Any failure
    raises before the signer writes config.signed_path. A signer that can
    verify checks the new image, and an image that fails the check is removed.

    Returns:
        (str): path of the signed image
    """
    plan = plan_uki(config, reader)

    os.makedirs(config.output_dir, exist_ok=True)
    with tempfile.TemporaryDirectory() as temp_dir:
        unsigned_path = os.path.join(temp_dir, os.path.splitext(config.efi_name)[0] + "-unsigned.efi")

        uki_logging.log_progress("Creating the unsigned UKI...")
        inserter.insert(config.stub, plan, unsigned_path)

        uki_logging.log_progress("Signing the UKI...")
        signer.sign(unsigned_path, config.signed_path, signer_options)

    if hasattr(signer, "verify") and not signer.verify(config.signed_path, signer_options):
        os.remove(config.signed_path)
        raise RuntimeError(f"Signature of {config.signed_path} does not verify against the signing certificate")

    logging.info(f"Signed UKI created at {config.signed_path}")
    return config.signed_path


def deploy_uki(signed_path: str, boot_dir: str = DEFAULT_BOOT_DIR, efi_name: Optional[str] = None) -> str:
    """Copies the signed image into the boot directory.

    Returns:
        (str): path of the deployed image
    """
    if efi_name is None:
        efi_name = os.path.basename(signed_path)
    os.makedirs(boot_dir, exist_ok=True)
    destination = os.path.join(boot_dir, efi_name)
    shutil.copy2(signed_path, destination)
    logging.info(f"Deployed UKI to {destination}")
    return destination
