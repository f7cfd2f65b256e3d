"""
lai-privacy Command Line Interface

Commands: hash, derive-key, encrypt, decrypt, settings
"""

import argparse
import getpass
import json
import os
import sys

from . import __version__
from .encryption import EncryptedEnvelope, EncryptionService, PrivacyError
from .logging import configure_logging, log_context
from .privacy import PrivacySettings

DEFAULT_PASSWORD_ENV = "LAI_PRIVACY_PASSWORD"


def load_encryption_service(args) -> EncryptionService:
    """Build an EncryptionService from --key, the password env var, or a prompt."""
    service = EncryptionService()

    key_hex = getattr(args, "key", None)
    if key_hex:
        try:
            service.set_master_key(key_hex)
        except PrivacyError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        return service

    password = os.environ.get(args.password_env)
    if password is None:
        password = getpass.getpass("Password: ")
    if not password:
        print("Error: password must not be empty", file=sys.stderr)
        sys.exit(1)

    service.initialize(password)
    return service


def cmd_hash(args):
    """Print the SHA-256 hash of a value"""
    print(EncryptionService().hash(args.text))


def cmd_derive_key(args):
    """Derive the master key and print it as hex (for backup)"""
    service = load_encryption_service(args)
    print(service.get_master_key())
    service.clear()


def cmd_encrypt(args):
    """Encrypt text and print the envelope as JSON"""
    text = args.text if args.text is not None else sys.stdin.read()
    service = load_encryption_service(args)

    try:
        with log_context(operation="encrypt"):
            envelope = service.encrypt(text)
    except PrivacyError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.clear()

    print(json.dumps(envelope.to_dict(), indent=2))


def cmd_decrypt(args):
    """Decrypt an envelope read from a file or stdin"""
    if args.file == "-":
        raw = sys.stdin.read()
    else:
        with open(args.file, "r", encoding="utf-8") as f:
            raw = f.read()

    try:
        envelope = EncryptedEnvelope.from_dict(json.loads(raw))
    except (json.JSONDecodeError, PrivacyError) as e:
        print(f"Error: invalid envelope: {e}", file=sys.stderr)
        sys.exit(1)

    service = load_encryption_service(args)
    try:
        with log_context(operation="decrypt"):
            plaintext = service.decrypt(envelope)
    except PrivacyError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.clear()

    sys.stdout.write(plaintext)
    if not plaintext.endswith("\n"):
        sys.stdout.write("\n")


def cmd_settings(args):
    """Print the default privacy settings"""
    print(json.dumps(PrivacySettings().to_dict(), indent=2))


def _add_key_arguments(parser):
    parser.add_argument("--key", "-k", help="Master key as hex (skips password derivation)")
    parser.add_argument("--password-env", default=DEFAULT_PASSWORD_ENV,
                        help=f"Environment variable holding the password (default: {DEFAULT_PASSWORD_ENV})")


def create_parser():
    """Create and configure the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="lai-privacy",
        description="lai-privacy: encryption and audit tooling for local chat data"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Minimum log level (default: WARNING)")
    parser.add_argument("--log-format", default="console",
                        choices=["console", "json", "pretty"],
                        help="Log output format (default: console)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    hash_parser = subparsers.add_parser("hash", help="SHA-256 hash of a value")
    hash_parser.add_argument("text", help="Value to hash")
    hash_parser.set_defaults(func=cmd_hash)

    derive_parser = subparsers.add_parser("derive-key", help="Derive and print the master key")
    _add_key_arguments(derive_parser)
    derive_parser.set_defaults(func=cmd_derive_key)

    encrypt_parser = subparsers.add_parser("encrypt", help="Encrypt text into a JSON envelope")
    encrypt_parser.add_argument("--text", "-t", help="Text to encrypt (default: read stdin)")
    _add_key_arguments(encrypt_parser)
    encrypt_parser.set_defaults(func=cmd_encrypt)

    decrypt_parser = subparsers.add_parser("decrypt", help="Decrypt a JSON envelope")
    decrypt_parser.add_argument("file", nargs="?", default="-",
                                help="Envelope file (default: stdin)")
    _add_key_arguments(decrypt_parser)
    decrypt_parser.set_defaults(func=cmd_decrypt)

    settings_parser = subparsers.add_parser("settings", help="Show default privacy settings")
    settings_parser.set_defaults(func=cmd_settings)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    configure_logging(level=args.log_level, format=args.log_format)
    args.func(args)


if __name__ == "__main__":
    main()
