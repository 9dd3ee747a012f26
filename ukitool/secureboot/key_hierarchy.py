# @file key_hierarchy.py
# Creates the UEFI Secure Boot key hierarchy (PK, KEK, db) together with the
# EFI signature lists and authenticated variables needed to enroll it.
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Creates the UEFI Secure Boot key hierarchy.

The Platform Key (PK) signs updates to itself and to the Key Exchange Key
(KEK) database. The KEK signs updates to the Signature Database (db). The db
key signs boot images, e.g. the UKI built by uki_tool.

Output layout below the output directory:

    keys/{PK,KEK,db}.key     PEM private keys, encrypted when a password is given
    certs/{PK,KEK,db}.crt    PEM self-signed certificates
    esl/{PK,KEK,db}.esl      EFI signature lists
    auth/{PK,KEK,db}.auth    signed authenticated variables
    GUID.txt                 owner GUID of the signature lists

Keys and certificates are created with cryptography; the signature lists and
authenticated variables with efitools.
"""

import contextlib
import datetime
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from typing import Iterator, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from edk2toollib.utility_functions import RunCmd

KEYS_DIR = "keys"
CERTS_DIR = "certs"
ESL_DIR = "esl"
AUTH_DIR = "auth"
GUID_FILE = "GUID.txt"

DEFAULT_VALID_DAYS = 3650
DEFAULT_KEY_SIZE = 2048

CERT_TO_ESL = "cert-to-efi-sig-list"
SIGN_ESL = "sign-efi-sig-list"
REQUIRED_TOOLS = (CERT_TO_ESL, SIGN_ESL)


@dataclass(frozen=True)
class SecureBootKey:
    """One level of the Secure Boot key hierarchy."""

    name: str
    description: str
    signed_by: str

    def key_path(self, output_dir: str) -> str:
        """Path of the private key."""
        return os.path.join(output_dir, KEYS_DIR, self.name + ".key")

    def cert_path(self, output_dir: str) -> str:
        """Path of the certificate."""
        return os.path.join(output_dir, CERTS_DIR, self.name + ".crt")

    def esl_path(self, output_dir: str) -> str:
        """Path of the EFI signature list."""
        return os.path.join(output_dir, ESL_DIR, self.name + ".esl")

    def auth_path(self, output_dir: str) -> str:
        """Path of the signed authenticated variable."""
        return os.path.join(output_dir, AUTH_DIR, self.name + ".auth")


PLATFORM_KEY = SecureBootKey("PK", "Platform Key", "PK")
KEY_EXCHANGE_KEY = SecureBootKey("KEK", "Key Exchange Key", "PK")
SIGNATURE_DATABASE_KEY = SecureBootKey("db", "Signature Database key", "KEK")

# Order matters, every key is created after the key that signs it.
KEY_HIERARCHY = (PLATFORM_KEY, KEY_EXCHANGE_KEY, SIGNATURE_DATABASE_KEY)


def get_key(name: str) -> SecureBootKey:
    """Returns the hierarchy entry called name."""
    for key in KEY_HIERARCHY:
        if key.name == name:
            return key
    raise KeyError(name)


@contextlib.contextmanager
def temporary_umask(mask: int) -> Iterator[None]:
    """Applies mask to the files created inside the block."""
    old = os.umask(mask)
    try:
        yield
    finally:
        os.umask(old)


def generate_key_cert_pair(
    common_name: str,
    valid_days: int = DEFAULT_VALID_DAYS,
    password: Optional[bytes] = None,
    key_size: int = DEFAULT_KEY_SIZE,
) -> tuple[bytes, bytes]:
    """Creates an RSA key and a self-signed SHA-256 certificate for it.

    Args:
        common_name (str): subject and issuer CN
        valid_days (int): validity of the certificate, starting now
        password (bytes): encrypts the private key when given
        key_size (int): RSA modulus size in bits

    Returns:
        (tuple[bytes, bytes]): PEM private key, PEM certificate
    """
    now = datetime.datetime.now(datetime.timezone.utc)

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=valid_days))
        .serial_number(x509.random_serial_number())
        .public_key(key.public_key())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(private_key=key, algorithm=hashes.SHA256())
    )

    if password:
        encryption = serialization.BestAvailableEncryption(password)
    else:
        encryption = serialization.NoEncryption()

    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    cert_pem = cert.public_bytes(encoding=serialization.Encoding.PEM)
    return key_pem, cert_pem


def cert_to_esl(guid: str, cert_path: str, esl_path: str) -> None:
    """Converts a certificate into an EFI signature list owned by guid.

    Raises:
        (RuntimeError): cert-to-efi-sig-list returned with error
    """
    ret = RunCmd(CERT_TO_ESL, f'-g {guid} "{cert_path}" "{esl_path}"')
    if ret != 0:
        raise RuntimeError(f"Failed to convert {cert_path} to an EFI signature list: {ret}!")


def sign_esl(variable: str, guid: str, key_path: str, cert_path: str, esl_path: str, auth_path: str) -> None:
    """Signs an EFI signature list into an authenticated variable update.

    sign-efi-sig-list prompts for the password on the terminal when the key
    is encrypted.

    Raises:
        (RuntimeError): sign-efi-sig-list returned with error
    """
    params = f'-g {guid} -k "{key_path}" -c "{cert_path}" {variable} "{esl_path}" "{auth_path}"'
    ret = RunCmd(SIGN_ESL, params)
    if ret != 0:
        raise RuntimeError(f"Failed to sign the {variable} list: {ret}!")


def check_required_tools() -> None:
    """Verifies that efitools is installed.

    Raises:
        (RuntimeError): lists the missing tools
    """
    missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
    if len(missing) > 0:
        raise RuntimeError(f"Required command(s) not found: {', '.join(missing)}. Please install efitools.")


def create_key_hierarchy(
    common_name: str,
    output_dir: str,
    passwords: Optional[dict] = None,
    valid_days: int = DEFAULT_VALID_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
    guid: Optional[str] = None,
) -> dict:
    """Creates keys, certificates, signature lists and authenticated variables for PK, KEK and db.

    Args:
        common_name (str): CN prefix, e.g. "My Host" gives "My Host PK"
        output_dir (str): root of the keys/ certs/ esl/ auth/ directories
        passwords (dict): key name -> password (bytes) for the private keys. unset keys are not encrypted
        valid_days (int): validity of the certificates
        key_size (int): RSA modulus size in bits
        guid (str): owner GUID of the signature lists. random when not given

    Returns:
        (dict): key name -> dict of 'key', 'cert', 'esl' and 'auth' paths, plus 'guid'

    Raises:
        (FileExistsError): a private key already exists in output_dir
        (RuntimeError): efitools missing or failed
    """
    passwords = passwords or {}
    existing = [key.key_path(output_dir) for key in KEY_HIERARCHY if os.path.exists(key.key_path(output_dir))]
    if len(existing) > 0:
        raise FileExistsError(f"Refusing to overwrite existing key(s): {', '.join(existing)}")
    check_required_tools()

    for directory in (KEYS_DIR, CERTS_DIR, ESL_DIR, AUTH_DIR):
        os.makedirs(os.path.join(output_dir, directory), exist_ok=True)

    for index, key in enumerate(KEY_HIERARCHY, start=1):
        logging.info(f"{index}. Generating {key.description} ({key.name})...")
        key_pem, cert_pem = generate_key_cert_pair(
            f"{common_name} {key.name}", valid_days, passwords.get(key.name), key_size
        )
        with temporary_umask(0o077):
            with open(key.key_path(output_dir), "wb") as key_file:
                key_file.write(key_pem)
        with open(key.cert_path(output_dir), "wb") as cert_file:
            cert_file.write(cert_pem)

    if guid is None:
        guid = str(uuid.uuid4())
    with open(os.path.join(output_dir, GUID_FILE), "w") as guid_file:
        guid_file.write(guid + "\n")
    logging.info(f"GUID ({guid}) saved to {GUID_FILE}")

    logging.info("Converting certificates to EFI Signature List format (.esl)...")
    for key in KEY_HIERARCHY:
        cert_to_esl(guid, key.cert_path(output_dir), key.esl_path(output_dir))

    logging.info("Creating signed files for firmware enrollment (.auth)...")
    for key in KEY_HIERARCHY:
        parent = get_key(key.signed_by)
        if parent.name in passwords:
            logging.info(f"You will be asked for the {parent.name}.key password.")
        sign_esl(
            key.name,
            guid,
            parent.key_path(output_dir),
            parent.cert_path(output_dir),
            key.esl_path(output_dir),
            key.auth_path(output_dir),
        )

    paths = {"guid": guid}
    for key in KEY_HIERARCHY:
        paths[key.name] = {
            "key": key.key_path(output_dir),
            "cert": key.cert_path(output_dir),
            "esl": key.esl_path(output_dir),
            "auth": key.auth_path(output_dir),
        }
    return paths
