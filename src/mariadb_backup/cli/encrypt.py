"""Stand-alone encryption helper.

Encrypts or decrypts a single file in the same format backups use, so
artifacts can be inspected by hand.  Also registered as the ``encrypt``
subcommand of ``mariadb-backup``.

Usage:
    python -m mariadb_backup.cli.encrypt --encrypt dump.sql.gz
    python -m mariadb_backup.cli.encrypt --decrypt dump.sql.gz.enc --key /secure/key
"""

import argparse
import sys
from pathlib import Path

from rich.console import Console

from mariadb_backup.backup.encryption import decrypt_file, encrypt_file
from mariadb_backup.errors import MariaDBBackupError
from mariadb_backup.log import setup_logging

console = Console()

DEFAULT_KEY_FILE = Path(".backup_encryption_key")


def add_encrypt_arguments(parser: argparse.ArgumentParser) -> None:
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--encrypt", type=Path, metavar="FILE", help="Encrypt FILE to FILE.enc")
    action.add_argument("--decrypt", type=Path, metavar="FILE", help="Decrypt FILE.enc to FILE")
    parser.add_argument(
        "--key",
        type=Path,
        default=DEFAULT_KEY_FILE,
        help=f"Key file (default: {DEFAULT_KEY_FILE}, generated on first encrypt)",
    )
    parser.add_argument(
        "--checksum-dir",
        type=Path,
        default=None,
        help="Directory holding .sha256 sidecars (default: beside the file, then ./checksums)",
    )
    parser.add_argument("--output", "-o", type=Path, default=None, help="Decrypted output path")
    parser.add_argument("--log-dir", type=Path, default=Path("./logs"), help="Log directory")


def cmd_encrypt(args: argparse.Namespace) -> int:
    """Handle encrypt command."""
    setup_logging("encrypt", args.log_dir, verbose=getattr(args, "verbose", False))
    try:
        if args.encrypt is not None:
            output = encrypt_file(args.encrypt, args.key, checksum_dir=args.checksum_dir)
            console.print(f"[bold green]v[/bold green] Encrypted: {output}")
        else:
            checksum_dir = args.checksum_dir or args.decrypt.parent / "checksums"
            output = decrypt_file(args.decrypt, args.key, output=args.output, checksum_dir=checksum_dir)
            console.print(f"[bold green]v[/bold green] Decrypted: {output}")
    except MariaDBBackupError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return int(e.exit_code)
    return 0


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Encrypt or decrypt a backup file (AES-256-CBC, PBKDF2)",
    )
    add_encrypt_arguments(parser)
    return cmd_encrypt(parser.parse_args())


if __name__ == "__main__":
    sys.exit(main())
