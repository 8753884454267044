"""
Safeguard access command line

Logs in to a Safeguard appliance and performs a few session-level actions:
show the current user, check out a password for an access request, or follow
the appliance event stream.

Authentication (one of):
- --user USER            password login (password from SAFEGUARD_PASSWORD or prompt)
- --cert FILE            client certificate login (PKCS#12 or PEM bundle)
- --interactive          browser login
- no option              reuse a token exported with --export
"""

import argparse
import asyncio
import getpass
import json
import logging
import os
import signal
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from . import __version__
from .client import SafeguardClient
from .config import ClientConfig, TOKEN_ENV_VAR, get_log_path
from .errors import SafeguardError

logger = logging.getLogger(__name__)


def setup_logging(debug: bool, log_file: Optional[str] = None) -> None:
    """Configure the root logger for console and optional file output."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if log_file:
        log_path = get_log_path() if log_file == "-" else log_file
        os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_path,
            when="D",
            interval=1,
            backupCount=2,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(file_handler)


def build_config(args: argparse.Namespace) -> ClientConfig:
    config = ClientConfig.from_env(ClientConfig.load())
    if args.appliance:
        config.appliance_url = args.appliance
    if args.api_version:
        config.api_version = args.api_version
    if args.ca_bundle:
        config.ca_bundle = args.ca_bundle
    if args.no_verify_ssl:
        config.verify_ssl = False
    return config


async def authenticate(client: SafeguardClient, args: argparse.Namespace) -> None:
    if args.user:
        password = os.environ.get("SAFEGUARD_PASSWORD") or getpass.getpass(f"Password for {args.user}: ")
        await client.login_with_password(args.user, password)
    elif args.cert:
        cert_password = os.environ.get("SAFEGUARD_CERT_PASSWORD", "")
        if args.provider:
            await client.login_with_certificate(args.cert, cert_password, args.provider)
        else:
            await client.login_with_certificate(args.cert, cert_password)
    elif args.interactive:
        await client.login_interactive()
    else:
        client.restore_session()


async def cmd_login(client: SafeguardClient, args: argparse.Namespace) -> None:
    session = client.session
    logger.info(f"Logged in ({session.modality.value if session.modality else 'restored'}), "
                f"token valid for {int(session.remaining())}s")


async def cmd_me(client: SafeguardClient, args: argparse.Namespace) -> None:
    print(json.dumps(await client.me(), indent=2))


async def cmd_checkout(client: SafeguardClient, args: argparse.Namespace) -> None:
    request = await client.get_access_request(args.request_id)
    logger.info(f"Access request {request.value.id} is {request.value.state}")
    password = await client.check_out_password(request, wait=args.wait, timeout=args.timeout)
    print(password)


async def cmd_events(client: SafeguardClient, args: argparse.Namespace) -> None:
    stream = client.start_events()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    logger.info("Waiting for events (Ctrl+C to stop)...")
    while not stop_event.is_set():
        try:
            event = await asyncio.wait_for(stream.get(), timeout=1.0)
        except asyncio.TimeoutError:
            continue
        print(json.dumps({
            "Name": event.name,
            "Time": event.time,
            "Message": event.message,
            "ApplianceId": event.appliance_id,
            "Data": event.data,
        }))


COMMANDS = {
    "login": cmd_login,
    "me": cmd_me,
    "checkout": cmd_checkout,
    "events": cmd_events,
}


async def run(args: argparse.Namespace) -> int:
    config = build_config(args)
    async with SafeguardClient(config) as client:
        await authenticate(client, args)
        if args.export:
            client.export_session()
            # The variable only reaches child processes; print it for the shell
            print(f"export {TOKEN_ENV_VAR}={client.store.get_session_token()}", file=sys.stderr)
        await COMMANDS[args.command](client, args)
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safeguard-access",
        description="Authenticated access to a Safeguard appliance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  safeguard-access --appliance https://pam.example.com --user admin me
  safeguard-access --cert client.pfx checkout 1234 --wait --timeout 300
  safeguard-access --interactive --export login
  safeguard-access events                 # reuse an exported token
        """,
    )
    parser.add_argument("--appliance", help="Appliance URL (or SAFEGUARD_APPLIANCE)")
    parser.add_argument("--api-version", help="API version (default: v4)")
    parser.add_argument("--ca-bundle", metavar="FILE", help="CA certificate file for the appliance")
    parser.add_argument(
        "--no-verify-ssl",
        action="store_true",
        help="INSECURE: Disable SSL certificate verification (needs SAFEGUARD_ALLOW_INSECURE=1)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--log-file",
        nargs="?",
        const="-",
        metavar="FILE",
        help="Also log to FILE (default location when FILE is omitted)",
    )
    parser.add_argument("--export", action="store_true", help=f"Export the token to {TOKEN_ENV_VAR}")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    auth_group = parser.add_mutually_exclusive_group()
    auth_group.add_argument("--user", help="Log in with a local username and password")
    auth_group.add_argument("--cert", metavar="FILE", help="Log in with a client certificate")
    auth_group.add_argument("--interactive", action="store_true", help="Log in through the browser")
    parser.add_argument("--provider", help="rSTS provider scope for certificate login")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("login", help="Log in and report the session lifetime")
    subparsers.add_parser("me", help="Show the current user")
    checkout = subparsers.add_parser("checkout", help="Check out the password of an access request")
    checkout.add_argument("request_id", help="Access request id")
    checkout.add_argument("--wait", action="store_true", help="Wait while the request is pending")
    checkout.add_argument("--timeout", type=float, help="Give up waiting after this many seconds")
    subparsers.add_parser("events", help="Print appliance events as they arrive")

    return parser


def main():
    """Entry point for the safeguard-access command."""
    parser = create_parser()
    args = parser.parse_args()
    setup_logging(args.debug, args.log_file)

    try:
        sys.exit(asyncio.run(run(args)))
    except SafeguardError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
