"""
Configuration: what it is, and where it comes from.

The configuration is read once at startup, from the environment and
the command line (the latter wins), and never changes afterwards.
Every connection handler gets the same `ProxyConfig` by reference.
"""

import argparse
import enum
import os
from dataclasses import dataclass, field
from typing import Mapping, NewType, Optional, Sequence

from dotenv import load_dotenv

from ._errors import ConfigurationError


__version__ = "0.3.0"

Port = NewType("Port", int)

DEFAULT_PORT = Port(7788)
DEFAULT_USER_AGENT = (
    "Instagram 310.0.0.37.328 Android "
    "(31/12; 440dpi; 1080x2180; Xiaomi; M2007J3SG; apollo; qcom; de_DE; 543594164)"
)
DEFAULT_BODY_LIMIT = 2 * 1024 * 1024  # 2 MiB


class AuthScheme(enum.Enum):
    BEARER = "bearer"            # Authorization: Bearer <token>
    PROXY_BASIC = "proxy-basic"  # Proxy-Authorization: Basic base64(proxy:<token>)


class TargetMode(enum.Enum):
    PARAM = "param"  # GET /?url=https://example.com/
    URI = "uri"      # GET https://example.com/ HTTP/1.1, as sent to a regular proxy


@dataclass(frozen=True)
class ProxyConfig:
    auth_token: str = field(repr=False)
    listen_host: str = "0.0.0.0"
    listen_port: Port = DEFAULT_PORT
    user_agent: str = DEFAULT_USER_AGENT
    body_limit: int = DEFAULT_BODY_LIMIT
    shutdown_grace: float = 30.0
    redirect_limit: int = 10
    request_timeout: float = 30.0
    client_timeout: float = 10.0
    auth_scheme: AuthScheme = AuthScheme.BEARER
    target_mode: TargetMode = TargetMode.PARAM
    allow_connect: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.auth_token:
            raise ConfigurationError("An auth token is required (set AUTH_TOKEN)")
        parse_port(self.listen_port)
        if not self.user_agent:
            raise ConfigurationError("The user agent must not be empty")
        if self.body_limit <= 0:
            raise ConfigurationError(f"Body limit must be positive, not {self.body_limit}")
        if self.redirect_limit < 0:
            raise ConfigurationError(f"Redirect limit must not be negative, not {self.redirect_limit}")
        for name in ("shutdown_grace", "request_timeout", "client_timeout"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ConfigurationError(f"Unknown log level: {self.log_level!r}")


def parse_port(value) -> Port:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid port number: {value!r}") from None
    if port not in range(65536):
        raise ConfigurationError(f"Invalid port number: {value!r}")
    return Port(port)


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ConfigurationError(f"Not a boolean: {value!r}")


def _number(name: str, value: str, kind=float):
    try:
        return kind(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, not {value!r}") from None


def _choice(enum_type, name: str, value: str):
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(e.value for e in enum_type)
        raise ConfigurationError(f"{name} must be one of {choices}, not {value!r}") from None


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokenproxy",
        description="An authenticated forward proxy with a fixed outbound User-Agent.",
    )
    parser.add_argument("-u", "--user-agent", help="User-Agent sent to upstream servers")
    parser.add_argument("-p", "--port", help=f"port to listen on (env PORT, default {DEFAULT_PORT})")
    parser.add_argument("--host", help="interface to listen on (env LISTEN_HOST, default 0.0.0.0)")
    parser.add_argument("--auth-scheme", choices=[s.value for s in AuthScheme],
                        help="how clients present the token (env AUTH_SCHEME, default bearer)")
    parser.add_argument("--target-mode", choices=[m.value for m in TargetMode],
                        help="how the target URL is given (env TARGET_MODE, default param)")
    parser.add_argument("--no-connect", action="store_true", help="refuse CONNECT tunnels")
    parser.add_argument("--redirect-limit", help="redirects to follow, 0 to follow none (default 10)")
    parser.add_argument("--request-timeout", help="upstream timeout in seconds (default 30)")
    parser.add_argument("--shutdown-grace", help="seconds to wait for open connections on exit (default 30)")
    parser.add_argument("--body-limit", help="largest body accepted or returned, in bytes (default 2 MiB)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="logging level (env LOG_LEVEL, default INFO)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_configuration(
        argv: Optional[Sequence[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[str] = ".env",
    ) -> ProxyConfig:
    """
    Build the configuration from environment variables and
    command-line arguments. Arguments override the environment.

    When reading the process environment, variables from `env_file`
    (if it exists) are loaded into it first; variables that are
    already set keep their values. An explicit `environ` is used as
    it is.

    Raises ConfigurationError if the result is not usable,
    in particular when no auth token is set.
    """
    if environ is None:
        if env_file is not None:
            load_dotenv(env_file, override=False)
        environ = os.environ
    args = build_argument_parser().parse_args(argv)

    def pick(arg_value, env_name: str) -> Optional[str]:
        if arg_value is not None:
            return arg_value
        return environ.get(env_name) or None

    settings = {"auth_token": environ.get("AUTH_TOKEN", "")}

    port = pick(args.port, "PORT")
    if port is not None:
        settings["listen_port"] = parse_port(port)
    host = pick(args.host, "LISTEN_HOST")
    if host is not None:
        settings["listen_host"] = host
    user_agent = pick(args.user_agent, "USER_AGENT")
    if user_agent is not None:
        settings["user_agent"] = user_agent

    scheme = pick(args.auth_scheme, "AUTH_SCHEME")
    if scheme is not None:
        settings["auth_scheme"] = _choice(AuthScheme, "AUTH_SCHEME", scheme)
    mode = pick(args.target_mode, "TARGET_MODE")
    if mode is not None:
        settings["target_mode"] = _choice(TargetMode, "TARGET_MODE", mode)

    level = pick(args.log_level, "LOG_LEVEL")
    if level is not None:
        settings["log_level"] = level.upper()

    if args.no_connect:
        settings["allow_connect"] = False
    elif environ.get("ALLOW_CONNECT"):
        settings["allow_connect"] = parse_bool(environ["ALLOW_CONNECT"])

    for name, env_name, kind in [
        ("redirect_limit", "REDIRECT_LIMIT", int),
        ("request_timeout", "REQUEST_TIMEOUT", float),
        ("shutdown_grace", "SHUTDOWN_GRACE", float),
        ("body_limit", "BODY_LIMIT", int),
    ]:
        value = pick(getattr(args, name), env_name)
        if value is not None:
            settings[name] = _number(env_name, value, kind)

    return ProxyConfig(**settings)
