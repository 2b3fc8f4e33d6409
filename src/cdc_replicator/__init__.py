"""Webhook and API replication engine for per-integration tables."""


def main() -> int:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    return _service_main()


__all__ = ["main"]
