from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

ARGOOS_VERSION = "1.0.0"
DEFAULT_LISTEN = ":3000"
DEFAULT_ROLLOUT_ANNOTATION_KEY = "argoos.io/restartedAt"


class ConfigError(RuntimeError):
    """Raised when the process configuration is invalid."""


@dataclass(frozen=True)
class ArgoosConfig:
    """Immutable process configuration resolved once at startup.

    Attributes:
        kube_master_url: Kubernetes API URL used when not running in-cluster.
        in_cluster: Use the pod service account to reach the API server.
        skip_ssl_verification: Disable TLS verification for the Kubernetes API.
        ca_file / cert_file / key_file: Client TLS material for the API server.
        listen: ``host:port`` or ``:port`` for the webhook server.
        server_cert / server_key: Serve HTTPS when both are set.
        token: Shared secret expected in ``X-Argoos-Token``; empty disables auth.
        verbose: Force DEBUG logging.
        watch_namespace: Restrict the workload view to one namespace (empty = all).
        max_in_flight: Upper bound on concurrent rollout patch calls.
        patch_retries: Extra attempts after a failed patch call.
        stop_grace_seconds: How long ``stop()`` waits for in-flight rollouts.
        watch_timeout_seconds: Server-side timeout of each watch stream.
        request_timeout_seconds: Client-side timeout of list and patch API calls.
        rollout_annotation_key: Pod template annotation bumped to roll pods.
    """

    kube_master_url: str = ""
    in_cluster: bool = True
    skip_ssl_verification: bool = False
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    listen: str = DEFAULT_LISTEN
    server_cert: str = ""
    server_key: str = ""
    token: str = ""
    verbose: bool = False
    watch_namespace: str = ""
    max_in_flight: int = 4
    patch_retries: int = 3
    stop_grace_seconds: int = 10
    watch_timeout_seconds: int = 30
    request_timeout_seconds: int = 10
    rollout_annotation_key: str = DEFAULT_ROLLOUT_ANNOTATION_KEY

    @property
    def auth_enabled(self) -> bool:
        return bool(self.token)

    @property
    def tls_enabled(self) -> bool:
        return bool(self.server_cert and self.server_key)

    def listen_address(self) -> tuple[str, int]:
        """Split ``listen`` into a bindable ``(host, port)`` pair.

        An empty host (``:3000``) binds every interface.
        """
        host, separator, port = self.listen.rpartition(":")
        if not separator:
            raise ConfigError(f"LISTEN must look like host:port or :port, got: {self.listen!r}")
        try:
            port_number = int(port)
        except ValueError as exc:
            raise ConfigError(f"LISTEN port must be an integer, got: {port!r}") from exc
        if not 0 <= port_number <= 65535:
            raise ConfigError(f"LISTEN port must be within 0..65535, got: {port_number}")
        host = host.strip("[]") or "0.0.0.0"  # noqa: S104
        return host, port_number


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(
    name: str,
    raw: str | None,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def config_from_env(env: Mapping[str, str] | None = None) -> ArgoosConfig:
    """Build a configuration from defaults overlaid with environment variables."""
    values = env if env is not None else os.environ
    defaults = ArgoosConfig()

    return ArgoosConfig(
        kube_master_url=values.get("KUBE_MASTER_URL") or defaults.kube_master_url,
        in_cluster=parse_bool(values.get("INCLUSTER") or None, default=defaults.in_cluster),
        skip_ssl_verification=parse_bool(
            values.get("SKIP_SSL_VERIFICATION") or None,
            default=defaults.skip_ssl_verification,
        ),
        ca_file=values.get("CA_FILE", defaults.ca_file),
        cert_file=values.get("CERT_FILE", defaults.cert_file),
        key_file=values.get("KEY_FILE", defaults.key_file),
        listen=values.get("LISTEN") or defaults.listen,
        server_cert=values.get("SERVER_CERT", defaults.server_cert),
        server_key=values.get("SERVER_KEY", defaults.server_key),
        token=values.get("TOKEN", defaults.token).strip(),
        verbose=parse_bool(values.get("VERBOSE"), default=defaults.verbose),
        watch_namespace=values.get("WATCH_NAMESPACE", defaults.watch_namespace).strip(),
        max_in_flight=_parse_int(
            "MAX_IN_FLIGHT", values.get("MAX_IN_FLIGHT"), defaults.max_in_flight, minimum=1
        ),
        patch_retries=_parse_int(
            "PATCH_RETRIES", values.get("PATCH_RETRIES"), defaults.patch_retries, minimum=0
        ),
        stop_grace_seconds=_parse_int(
            "STOP_GRACE_SECONDS",
            values.get("STOP_GRACE_SECONDS"),
            defaults.stop_grace_seconds,
            minimum=0,
        ),
        watch_timeout_seconds=_parse_int(
            "WATCH_TIMEOUT_SECONDS",
            values.get("WATCH_TIMEOUT_SECONDS"),
            defaults.watch_timeout_seconds,
            minimum=1,
            maximum=3600,
        ),
        request_timeout_seconds=_parse_int(
            "REQUEST_TIMEOUT_SECONDS",
            values.get("REQUEST_TIMEOUT_SECONDS"),
            defaults.request_timeout_seconds,
            minimum=1,
            maximum=300,
        ),
        rollout_annotation_key=(
            values.get("ROLLOUT_ANNOTATION_KEY") or defaults.rollout_annotation_key
        ),
    )


def build_parser(base: ArgoosConfig) -> argparse.ArgumentParser:
    """Return the command-line parser whose defaults come from *base*."""
    parser = argparse.ArgumentParser(
        prog="argoos",
        description="Roll Kubernetes deployments when a registry announces an image push",
    )
    parser.add_argument("--version", action="store_true", help="Print argoos version and exit")
    parser.add_argument(
        "--incluster",
        action=argparse.BooleanOptionalAction,
        default=base.in_cluster,
        help=(
            "Contact Kubernetes with the pod service account. The master URL may be "
            "omitted in that case."
        ),
    )
    parser.add_argument("--verbose", action="store_true", default=base.verbose, help="Be verbose")
    parser.add_argument(
        "--master", default=base.kube_master_url, help="Kube master scheme://host:port"
    )
    parser.add_argument(
        "--skip-ssl-verification",
        action=argparse.BooleanOptionalAction,
        default=base.skip_ssl_verification,
        help="Skip SSL verification for the Kubernetes API",
    )
    parser.add_argument(
        "--listen", default=base.listen, help="Listen interface, host:port or :port"
    )
    parser.add_argument(
        "--ca-file",
        default=base.ca_file,
        help="Certificate Authority file used to verify the Kubernetes API",
    )
    parser.add_argument(
        "--cert-file", default=base.cert_file, help="Client certificate file (client auth only)"
    )
    parser.add_argument(
        "--key-file", default=base.key_file, help="Client private key file (client auth only)"
    )
    parser.add_argument(
        "--server-cert", default=base.server_cert, help="Certificate used to serve HTTPS"
    )
    parser.add_argument("--server-key", default=base.server_key, help="Key used to serve HTTPS")
    parser.add_argument(
        "--token",
        default=base.token,
        help=(
            "Token the registry must send in the X-Argoos-Token header. "
            "Authentication is disabled when empty."
        ),
    )
    parser.add_argument(
        "--namespace",
        default=base.watch_namespace,
        help="Only manage deployments in this namespace (default: all namespaces)",
    )
    parser.add_argument("--max-in-flight", type=int, default=base.max_in_flight)
    parser.add_argument("--patch-retries", type=int, default=base.patch_retries)
    parser.add_argument("--stop-grace-seconds", type=int, default=base.stop_grace_seconds)
    parser.add_argument("--watch-timeout-seconds", type=int, default=base.watch_timeout_seconds)
    parser.add_argument(
        "--request-timeout-seconds", type=int, default=base.request_timeout_seconds
    )
    parser.add_argument("--rollout-annotation-key", default=base.rollout_annotation_key)
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[ArgoosConfig, bool]:
    """Resolve configuration from defaults, environment and flags (in that order).

    Returns the configuration and whether ``--version`` was requested.
    Raises :class:`ConfigError` when a value is out of range.
    """
    base = config_from_env(env)
    args = build_parser(base).parse_args(argv)

    config = ArgoosConfig(
        kube_master_url=args.master,
        in_cluster=args.incluster,
        skip_ssl_verification=args.skip_ssl_verification,
        ca_file=args.ca_file,
        cert_file=args.cert_file,
        key_file=args.key_file,
        listen=args.listen,
        server_cert=args.server_cert,
        server_key=args.server_key,
        token=args.token.strip(),
        verbose=args.verbose,
        watch_namespace=args.namespace.strip(),
        max_in_flight=_parse_int(
            "--max-in-flight", str(args.max_in_flight), base.max_in_flight, minimum=1
        ),
        patch_retries=_parse_int(
            "--patch-retries", str(args.patch_retries), base.patch_retries, minimum=0
        ),
        stop_grace_seconds=_parse_int(
            "--stop-grace-seconds", str(args.stop_grace_seconds), base.stop_grace_seconds, minimum=0
        ),
        watch_timeout_seconds=_parse_int(
            "--watch-timeout-seconds",
            str(args.watch_timeout_seconds),
            base.watch_timeout_seconds,
            minimum=1,
            maximum=3600,
        ),
        request_timeout_seconds=_parse_int(
            "--request-timeout-seconds",
            str(args.request_timeout_seconds),
            base.request_timeout_seconds,
            minimum=1,
            maximum=300,
        ),
        rollout_annotation_key=args.rollout_annotation_key,
    )
    config.listen_address()
    return config, args.version
