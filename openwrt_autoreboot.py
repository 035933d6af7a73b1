#!/usr/bin/env python3
"""
openwrt_autoreboot.py

Flow:
  1) Resolve host/user/password from the CLI (all three) or config.toml
  2) POST "/cgi-bin/luci" with luci_username / luci_password (session cookie)
  3) GET "/cgi-bin/luci/?status=1&_=<epoch>" and read cpuusage + loadavg
  4) If cpuusage > 20 and every loadavg sample > 65000:
     - GET "/cgi-bin/luci/admin/system/reboot" and scrape token: '<32 hex>'
     - POST "/cgi-bin/luci/admin/system/reboot/call" with token=<TOKEN>

Usage:
    python openwrt_autoreboot.py http://192.168.1.1 root MySecretPassword
    python openwrt_autoreboot.py --config /etc/openwrt-autoreboot.toml
"""

import argparse
import logging
import os
import re
import sys
import time
import tomllib
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_PATH = "config.toml"

CPU_USAGE_THRESHOLD = 20  # percent
# Fixed-point load average (load * 65536); 65000 is roughly load > 0.99
LOAD_AVERAGE_THRESHOLD = 65000

TOKEN_PATTERN = re.compile(r"token: '(?P<token>[\da-f]{32})'")
CPU_USAGE_PATTERN = re.compile(r"[+-]?[0-9]+")

LOGIN_PATH = "/cgi-bin/luci"
STATUS_PATH = "/cgi-bin/luci/"
REBOOT_PAGE_PATH = "/cgi-bin/luci/admin/system/reboot"
REBOOT_CALL_PATH = "/cgi-bin/luci/admin/system/reboot/call"

logger = logging.getLogger("openwrt_autoreboot")


class AutoRebootError(RuntimeError):
    exit_code = 1


class ConfigError(AutoRebootError):
    """Credentials could not be resolved from the CLI or the config file."""

    exit_code = 2


class TransportError(AutoRebootError):
    """Network-level failure talking to the router."""

    exit_code = 3


class ResponseFormatError(AutoRebootError):
    """The router answered with something we cannot interpret."""

    exit_code = 4


class AuthenticationError(ResponseFormatError):
    """The router did not hand out a session cookie for these credentials."""

    exit_code = 5


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = Field(description="Base URL of the router, e.g. http://192.168.1.1")
    user: str = Field(description="LuCI admin username")
    password: str = Field(description="LuCI admin password")

    @field_validator("host")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class ConfigFile(BaseModel):
    server: ServerConfig


def load_config(path: str) -> ServerConfig:
    """Read the [server] table from a TOML config file."""
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed config file {path}: {e}") from e

    try:
        return ConfigFile.model_validate(data).server
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def resolve_server(args: argparse.Namespace, config_path: str = DEFAULT_CONFIG_PATH) -> ServerConfig:
    """
    All three of host/user/password on the command line win as a set.
    Anything less and the config file is used in full; values are never merged.
    """
    if args.host is not None and args.user is not None and args.password is not None:
        return ServerConfig(host=args.host, user=args.user, password=args.password)
    logger.debug("Credentials incomplete on the command line, reading %s", config_path)
    return load_config(config_path)


def build_session() -> requests.Session:
    return requests.Session()


def _send(
    session: requests.Session,
    method: str,
    url: str,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> requests.Response:
    logger.debug("%s %s", method, url)
    try:
        return session.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise TransportError(f"{method} {url} failed: {e}") from e


def login(session: requests.Session, server: ServerConfig, timeout: Optional[float] = None) -> None:
    """POST the LuCI login form; the sysauth cookie stays in the session."""
    _send(
        session,
        "POST",
        f"{server.host}{LOGIN_PATH}",
        timeout=timeout,
        data={"luci_username": server.user, "luci_password": server.password},
    )
    # The status code is not trusted; a missing session cookie is the failure signal.
    if not any(cookie.name.startswith("sysauth") for cookie in session.cookies):
        raise AuthenticationError(f"Login to {server.host} as {server.user!r} did not yield a session cookie.")


def fetch_status(session: requests.Session, server: ServerConfig, timeout: Optional[float] = None) -> Dict[str, Any]:
    resp = _send(
        session,
        "GET",
        f"{server.host}{STATUS_PATH}",
        timeout=timeout,
        params={"status": 1, "_": int(time.time())},
    )
    try:
        status = resp.json()
    except ValueError as e:
        raise ResponseFormatError(f"Status response is not JSON. Raw:\n{resp.text[:200]}") from e
    if not isinstance(status, dict):
        raise ResponseFormatError(f"Status response is not a JSON object: {status!r}")
    return status


def parse_cpu_usage(status: Dict[str, Any]) -> int:
    """
    LuCI reports cpuusage as "<percent>\\n<extra>", e.g. "45\\n12345 67890".
    Only the leading integer is used.
    """
    cpu = status.get("cpuusage")
    if not isinstance(cpu, str):
        raise ResponseFormatError(f"cpuusage missing or not a string: {cpu!r}")
    usage, sep, _ = cpu.partition("\n")
    if not sep:
        raise ResponseFormatError(f"cpuusage has no newline separator: {cpu!r}")
    if not CPU_USAGE_PATTERN.fullmatch(usage):
        raise ResponseFormatError(f"cpuusage is not an integer: {usage!r}")
    return int(usage)


def parse_load_averages(status: Dict[str, Any]) -> List[Any]:
    load_avg = status.get("loadavg")
    if not isinstance(load_avg, list):
        raise ResponseFormatError(f"loadavg missing or not an array: {load_avg!r}")
    return load_avg


def _exceeds_load_threshold(sample: Any) -> bool:
    # bool is an int subclass but true/false are not load samples
    if isinstance(sample, bool) or not isinstance(sample, (int, float)):
        return False
    if sample > LOAD_AVERAGE_THRESHOLD:
        logger.info("Current load average value is %s", sample)
        return True
    return False


def should_reboot(cpu_usage: int, load_averages: Optional[Sequence[Any]]) -> bool:
    """
    Reboot only when CPU usage is above 20% and every load-average sample is
    above the fixed-point threshold. An empty sample list never reboots.

    load_averages is only consulted when the CPU stage triggers, so it may be
    None for low CPU readings.
    """
    if cpu_usage <= CPU_USAGE_THRESHOLD:
        logger.info("Current cpu usage is %d, there is nothing to do.", cpu_usage)
        return False

    logger.info("Current cpu usage is %d, checking load average.", cpu_usage)
    if not load_averages:
        logger.warning("Load average list is empty, refusing to reboot.")
        return False
    return all(_exceeds_load_threshold(sample) for sample in load_averages)


def extract_token(html: str) -> str:
    """Return the first token: '<32 hex>' embedded in the reboot page."""
    m = TOKEN_PATTERN.search(html)
    if not m:
        raise ResponseFormatError("Reboot page does not contain a token.")
    return m.group("token")


def reboot(session: requests.Session, server: ServerConfig, timeout: Optional[float] = None) -> str:
    """Fetch the one-time token and confirm the reboot with it. Returns the token used."""
    resp = _send(session, "GET", f"{server.host}{REBOOT_PAGE_PATH}", timeout=timeout)
    token = extract_token(resp.text)
    _send(
        session,
        "POST",
        f"{server.host}{REBOOT_CALL_PATH}",
        timeout=timeout,
        data={"token": token},
    )
    return token


def run(session: requests.Session, server: ServerConfig, timeout: Optional[float] = None) -> bool:
    """One check-and-maybe-reboot pass. Returns True if a reboot was requested."""
    login(session, server, timeout=timeout)
    status = fetch_status(session, server, timeout=timeout)

    cpu_usage = parse_cpu_usage(status)
    load_averages = parse_load_averages(status) if cpu_usage > CPU_USAGE_THRESHOLD else None
    if not should_reboot(cpu_usage, load_averages):
        return False

    logger.warning("Should call reboot now, performing OpenWrt reboot on %s", server.host)
    reboot(session, server, timeout=timeout)
    logger.info("Reboot confirmation sent to %s.", server.host)
    return True


def setup_logging() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _package_version() -> str:
    try:
        return version("openwrt-autoreboot")
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Auto reboot an overloaded OpenWrt router through LuCI.")
    p.add_argument("host", nargs="?", help="Router base URL, e.g. http://192.168.1.1")
    p.add_argument("user", nargs="?", help="LuCI username")
    p.add_argument("password", nargs="?", help="LuCI password")
    p.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Config file used when host/user/password are not all given (default: {DEFAULT_CONFIG_PATH})",
    )
    p.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds (default: none)")
    p.add_argument("--version", action="version", version=f"%(prog)s {_package_version()}")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)

    try:
        server = resolve_server(args, args.config)
        with build_session() as session:
            run(session, server, timeout=args.timeout)
    except AutoRebootError as e:
        logger.error("%s", e)
        return e.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
