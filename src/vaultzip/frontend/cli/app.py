"""
VaultZip command line.

Usage:
    vaultzip register --email you@example.com
    vaultzip upload ./report.zip --email you@example.com --title "Q3 report"
    vaultzip list --email you@example.com
    vaultzip download --email you@example.com [--id ID] [--output-dir DIR]
    vaultzip decrypt ./report.zip.vault [--override-key]

register/upload/list/download need VAULTZIP_APP_KEY (the server master
secret). decrypt runs entirely on the client and only needs the licence key.

Exit code is 0 on success and 1 on any failure; errors go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

from vaultzip.core.config import load_config
from vaultzip.core.exceptions import (
    AuthenticationError,
    ConfigError,
    ValidationError,
    VaultZipError,
)
from vaultzip.core.streams import iter_file
from vaultzip.frontend.cli.client_config import (
    DEFAULT_CONFIG_NAME,
    ClientConfig,
    resolve_licence_key,
)
from vaultzip.frontend.cli.context import AppContext, build_context
from vaultzip.frontend.cli.logging_config import configure_logging
from vaultzip.security.bundle import BUNDLE_SUFFIX
from vaultzip.services.unbundle import ClientUnbundler

logger = logging.getLogger(__name__)


def _error(message: str) -> int:
    print(message, file=sys.stderr)
    return 1


def _context_from_env() -> AppContext:
    return build_context(load_config())


def cmd_register(args, ctx: AppContext, client_config: ClientConfig) -> int:
    user = ctx.users.register(args.email)
    try:
        client_config.save_licence_key(user.email, user.licence_key)
    except ConfigError as e:
        # the account exists now; the key must not be lost
        print(f"Your licence key is {user.licence_key}. Keep it safe: {e}", file=sys.stderr)
        return 1
    print(f"Licence key saved to the system keyring for {user.email}")
    print("Registration successful.")
    return 0


def cmd_upload(args, ctx: AppContext, client_config: ClientConfig) -> int:
    path = Path(args.file_path) if args.file_path and args.file_path.strip() else None
    if path is None:
        return _error("Provide the path to the file")
    if not path.is_file():
        return _error(f"File not found at {path}")

    size = path.stat().st_size
    record = ctx.uploads.initialise(args.email, args.title, path.name, size)
    part = ctx.uploads.make_part(path.name, size, iter_file(path, ctx.config.chunk_size))
    asyncio.run(ctx.uploads.upload(args.email, record.id, part))
    print("File upload successful.")
    return 0


def _print_table(uploads) -> None:
    rows = [("ID", "Title", "Original File Name", "File Size Approx")]
    rows += [
        (u.id, u.title, u.file_data.original_file_name, u.file_size_mb) for u in uploads
    ]
    widths = [max(len(str(row[i])) for row in rows) for i in range(4)]
    for row in rows:
        print("  ".join(str(cell).ljust(width) for cell, width in zip(row, widths)).rstrip())


def _licence_key(args, client_config: ClientConfig) -> str:
    licence_key = resolve_licence_key(
        getattr(args, "licence_key", None),
        getattr(args, "override_key", False),
        client_config,
        email=getattr(args, "email", None),
    )
    if not licence_key:
        raise ValidationError("Licence key is required.")
    return licence_key


def cmd_list(args, ctx: AppContext, client_config: ClientConfig) -> int:
    uploads = ctx.uploads.list_completed(args.email, _licence_key(args, client_config))
    if not uploads:
        print("You have not uploaded any file.")
        return 0
    _print_table(uploads)
    return 0


def cmd_download(
    args, ctx: AppContext, client_config: ClientConfig, ask: Optional[Callable[[str], str]] = None
) -> int:
    ask = ask or input
    licence_key = _licence_key(args, client_config)
    upload_id = args.id
    if not upload_id:
        uploads = ctx.uploads.list_completed(args.email, licence_key)
        if not uploads:
            print("You have not uploaded any file.")
            return 0
        _print_table(uploads)
        ids = {u.id for u in uploads}
        upload_id = ask("Enter the ID of the file: ").strip()
        if upload_id not in ids:
            return _error("Please enter a valid file ID")

    destination = asyncio.run(
        ctx.downloads.write_bundle(args.email, licence_key, upload_id, args.output_dir)
    )
    print(f"Download complete. Encrypted bundle saved to {destination}")
    return 0


def cmd_decrypt(args, client_config: ClientConfig) -> int:
    licence_key = resolve_licence_key(args.licence_key, args.override_key, client_config)
    if not licence_key:
        return _error("Licence key is required.")

    if not args.file_path or not args.file_path.strip():
        return _error("Provide the path to the encrypted file.")
    path = Path(args.file_path)
    if not path.exists():
        return _error(f'File not found at "{path}".')
    if not path.name.endswith(BUNDLE_SUFFIX):
        return _error(f'Provide a "{BUNDLE_SUFFIX}" file.')

    print(f'Decrypting "{path.name}"...')
    try:
        output = ClientUnbundler().unbundle(path, licence_key)
    except AuthenticationError as e:
        return _error(str(e))
    except VaultZipError as e:
        return _error(f"Decryption failed: {e}")
    print(f'File has been successfully decrypted to: "{output}"')
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vaultzip", description="VaultZip encrypted file vault")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument(
        "--client-config", default=None, help=f"path to the client config (default ./{DEFAULT_CONFIG_NAME})"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("register", help="Register a user.")
    p.add_argument("--email", required=True)

    p = sub.add_parser("upload", help="Upload a file")
    p.add_argument("file_path", metavar="file-path")
    p.add_argument("--email", required=True)
    p.add_argument("--title", required=True)

    p = sub.add_parser("list", help="List your uploaded files")
    p.add_argument("--email", required=True)
    p.add_argument("--licence-key", default=None)
    p.add_argument("--override-key", action="store_true")

    p = sub.add_parser("download", help="Download a file as an encrypted bundle")
    p.add_argument("--email", required=True)
    p.add_argument("--licence-key", default=None)
    p.add_argument("--override-key", action="store_true")
    p.add_argument("--id", default=None, help="upload id; prompts with a list when omitted")
    p.add_argument("--output-dir", default=".")

    p = sub.add_parser("decrypt", help=f"Decrypt an encrypted `{BUNDLE_SUFFIX}` file")
    p.add_argument("file_path", metavar="file-path", help=f"e.g. my_file.pdf{BUNDLE_SUFFIX}")
    p.add_argument("--licence-key", default=None)
    p.add_argument(
        "--override-key", action="store_true", help="Manually enter a different licence key."
    )

    return parser


COMMANDS = {
    "register": cmd_register,
    "upload": cmd_upload,
    "list": cmd_list,
    "download": cmd_download,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    client_config = ClientConfig(args.client_config)
    logger.debug("running %s with client config %s", args.command, client_config.path)

    ctx = None
    try:
        if args.command == "decrypt":
            # runs on the client only; no server context needed
            return cmd_decrypt(args, client_config)
        ctx = _context_from_env()
        return COMMANDS[args.command](args, ctx, client_config)
    except VaultZipError as e:
        return _error(str(e))
    except OSError as e:
        return _error(f"I/O error: {e}")
    except (KeyboardInterrupt, EOFError):
        return _error("Interrupted.")
    finally:
        if ctx is not None:
            ctx.close()


if __name__ == "__main__":
    sys.exit(main())
