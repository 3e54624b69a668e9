"""Entry point for running the webhook server via python -m snapsync_server"""

import sys

from snapsync.config_loader import ConfigError, get_config, require_runnable

from .app import serve


def main() -> None:
    try:
        config = get_config()
        require_runnable(config)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)
    serve(config)


if __name__ == "__main__":
    main()
