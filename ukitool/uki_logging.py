# @file uki_logging.py
# Handle basic logging config for the uki and secure boot tools.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Handles basic logging config for the command line tools.

uki_logging always masks signing key passwords that make it into a log
message, e.g. when final signer options are echoed in verbose mode. When it is
detected that the tool is running on a CI system ("CI" or "TF_BUILD" set to
TRUE), PEM private key bodies are masked as well.
"""

import logging
import os
import re
from typing import Optional, Union

from edk2toollib.log import ansi_handler

# section marks the major steps of a tool run (build, sign, deploy)
# subsection marks a step inside the current section
# progress marks a completed step. Below critical so it can be turned off
SECTION = logging.CRITICAL + 2  # just above critical
SUB_SECTION = logging.CRITICAL + 1  # just above critical
PROGRESS = logging.CRITICAL - 1  # just below critical

MASK = "*******"


def get_section_level() -> int:
    """Returns SECTION."""
    return SECTION


def get_subsection_level() -> int:
    """Returns SUB_SECTION."""
    return SUB_SECTION


def get_progress_level() -> int:
    """Returns PROGRESS."""
    return PROGRESS


def get_uki_filter() -> logging.Filter:
    """Returns a uki log filter."""
    return UkiLogFilter()


def log_section(message: str) -> None:
    """Creates a logging message at the section level."""
    logging.log(get_section_level(), message)


def log_progress(message: str) -> None:
    """Creates a logging message at the progress level."""
    logging.log(get_progress_level(), message)


def setup_section_level() -> None:
    """Registers the names of the custom levels."""
    section_level = get_section_level()
    subsection_level = get_subsection_level()
    progress_level = get_progress_level()
    if logging.getLevelName(section_level) != "SECTION":
        logging.addLevelName(section_level, "SECTION")
    if logging.getLevelName(subsection_level) != "SUBSECTION":
        logging.addLevelName(subsection_level, "SUBSECTION")
    if logging.getLevelName(progress_level) != "PROGRESS":
        logging.addLevelName(progress_level, "PROGRESS")


# creates a plaintext log file in directory
def setup_txt_logger(
    directory: str,
    filename: str = "log",
    logging_level: int = logging.INFO,
    formatter: Optional[logging.Formatter] = None,
    logging_namespace: Optional[str] = "",
) -> tuple:
    """Configures a text logger.

    Returns:
        (tuple[str, logging.Handler]): the path of the log file and its handler
    """
    logger = logging.getLogger(logging_namespace)
    log_formatter = formatter
    if log_formatter is None:
        log_formatter = logging.Formatter("%(levelname)s - %(message)s")

    if not os.path.isdir(directory):
        os.makedirs(directory)

    logfile_path = os.path.join(directory, filename + ".txt")

    # delete file before starting a new log
    if os.path.isfile(logfile_path):
        os.remove(logfile_path)

    filelogger = logging.FileHandler(filename=logfile_path, mode="a")
    filelogger.setLevel(logging_level)
    filelogger.setFormatter(log_formatter)
    filelogger.addFilter(get_uki_filter())
    logger.addHandler(filelogger)

    return logfile_path, filelogger


# sets up a colored console logger
def setup_console_logging(
    logging_level: int = logging.INFO,
    formatter: Optional[str] = None,
    logging_namespace: Optional[str] = "",
    isVerbose: bool = False,
    use_color: bool = True,
) -> logging.Handler:
    """Configures a console logger.

    Masking of secrets is always applied. See UkiLogFilter.
    """
    if formatter is None and isVerbose:
        formatter_msg = "%(name)s: %(levelname)s - %(message)s"
    elif formatter is None:
        formatter_msg = "%(levelname)s - %(message)s"
    else:
        formatter_msg = formatter

    logger = logging.getLogger(logging_namespace)

    if use_color:
        handler = ansi_handler.ColoredStreamHandler()
        handler.setFormatter(ansi_handler.ColoredFormatter(formatter_msg))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(formatter_msg))

    handler.setLevel(logging_level)
    handler.addFilter(get_uki_filter())
    logger.addHandler(handler)
    return handler


def stop_logging(
    loghandle: Union[list[logging.Handler], logging.Handler], logging_namespace: Optional[str] = ""
) -> None:
    """Stops logging on a log handle."""
    logger = logging.getLogger(logging_namespace)
    if loghandle is None:
        return
    if isinstance(loghandle, list):
        # if it's an array, process each element as a handle
        for handle in loghandle:
            handle.close()
            logger.removeHandler(handle)
    else:
        loghandle.close()
        logger.removeHandler(loghandle)


class UkiLogFilter(logging.Filter):
    """Subclass of logging.Filter that masks secrets in records."""

    def __init__(self) -> None:
        """Inits a filter."""
        logging.Filter.__init__(self)
        self.apply_ci_filter = False

        if os.environ.get("CI", "FALSE").upper() == "TRUE" or os.environ.get("TF_BUILD", "FALSE").upper() == "TRUE":
            self.apply_ci_filter = True

        # key_file_password=secret, 'key_pass': 'secret', -passin pass:secret
        self.password_regex = re.compile(r"(\b\w*pass(?:word)?['\"]?\s*[=:]\s*['\"]?)[^\s,'\"}]+", re.IGNORECASE)
        self.pem_key_regex = re.compile(
            r"(-----BEGIN [A-Z ]*PRIVATE KEY-----).*?(-----END [A-Z ]*PRIVATE KEY-----)", re.DOTALL
        )

    def filter(self, record: logging.LogRecord) -> bool:
        """Masks secrets in the record message. Never drops a record."""
        message = record.getMessage()
        masked = self.password_regex.sub(rf"\1{MASK}", message)
        if self.apply_ci_filter:
            masked = self.pem_key_regex.sub(rf"\1{MASK}\2", masked)
        if masked != message:
            record.msg = masked
            record.args = None
        return True
