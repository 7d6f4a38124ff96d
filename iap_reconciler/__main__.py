"""Entry point for running the reconciler as a module."""

import argparse
import os
import sys

import uvicorn

from iap_reconciler.config import Config, ConfigurationError


def check_config(config_path: str) -> int:
    """Load and validate a configuration file, returning an exit code."""
    try:
        config = Config(config_path)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    settings = config.settings
    print(f"Configuration OK: {config.config_path}")
    print(f"Package: {settings.application.package_name}")
    print(f"Authority: {settings.authority.base_url}")
    print(f"Downstream: {'enabled' if settings.downstream.enabled else 'disabled'}")
    return 0


def main() -> None:
    """Main entry point for the IAP reconciler."""
    parser = argparse.ArgumentParser(
        description="IAP Entitlement Reconciler - keeps purchase entitlements in step with Google Play"
    )
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="Log output format (default: json)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/reconciler.yaml"),
        help="Path to the reconciler YAML configuration (default: config/reconciler.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development (default: false)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and exit",
    )

    args = parser.parse_args()

    # Set environment variables for application
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.check_config:
        sys.exit(check_config(args.config))

    # Print startup banner
    if args.log_format == "console":
        print("=" * 60)
        print("IAP Entitlement Reconciler v0.1.0")
        print("=" * 60)
        print(f"Host: {args.host}")
        print(f"Port: {args.port}")
        print(f"Log Level: {args.log_level}")
        print(f"Config: {args.config}")
        print("=" * 60)

    # Run uvicorn server
    try:
        uvicorn.run(
            "iap_reconciler.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # We use our own middleware for access logs
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
        sys.exit(0)
    except Exception as e:
        print(f"Failed to start reconciler: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
