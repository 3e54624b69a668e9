#!/usr/bin/env python3
"""snapsync CLI - run the snapshot sync once, serve the webhook, inspect config."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"snapsync requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)

SECRET_FIELDS = {("git", "token"), ("webhook", "token")}


def _masked(data: dict) -> dict:
    out = json.loads(json.dumps(data))
    for section, key in SECRET_FIELDS:
        if out.get(section, {}).get(key):
            out[section][key] = "********"
    return out


def _load(project_path: str | None):
    from .config_loader import ConfigError, load_config

    try:
        return load_config(Path(project_path) if project_path else None)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(
        prog="snapsync",
        description="Sync CMS content builds into a git snapshot branch",
    )
    ap.add_argument("--project-path", help="Project directory for config discovery")

    sub = ap.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run the sync pipeline once")
    p_run.add_argument("--json", dest="as_json", action="store_true", help="Print the result as JSON")

    p_serve = sub.add_parser("serve", help="Start the webhook server")
    p_serve.add_argument("--host", help="Bind address (default: from config)")
    p_serve.add_argument("--port", type=int, help="Port (default: from config)")

    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")
    p_config_show = config_sub.add_parser("show", help="Show resolved configuration")
    p_config_show.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")
    config_sub.add_parser("validate", help="Check that a sync run could start")

    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    if args.cmd == "run":
        from .config_loader import ConfigError, require_runnable
        from .errors import SyncError
        from .pipeline import SyncPipeline

        config = _load(args.project_path)
        try:
            require_runnable(config)
        except ConfigError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(2)

        try:
            result = SyncPipeline(config).run()
        except SyncError as e:
            print(f"❌ Sync failed: {e}", file=sys.stderr)
            sys.exit(1)

        if args.as_json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(f"Branch:   {result.branch} ({result.lifecycle.value})")
            print(f"Outcome:  {result.outcome.value}")
            if result.commit_id:
                print(f"Commit:   {result.commit_id}")
            if result.changed_paths:
                print(f"Changed:  {len(result.changed_paths)} path(s)")
            if result.compare_url:
                print(f"Compare:  {result.compare_url}")
            for error in result.errors:
                print(f"⚠️  {error}")
        sys.exit(0)

    if args.cmd == "serve":
        from .config_loader import ConfigError, require_runnable

        config = _load(args.project_path)
        try:
            require_runnable(config)
        except ConfigError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(2)

        from snapsync_server.app import serve

        serve(config, host=args.host, port=args.port)
        sys.exit(0)

    if args.cmd == "config":
        if not args.config_cmd:
            print("Usage: snapsync config {show|validate}")
            sys.exit(0)

        config = _load(args.project_path)

        if args.config_cmd == "show":
            data = _masked(config.model_dump())
            if args.as_json:
                print(json.dumps(data, indent=2))
            else:
                for section, values in data.items():
                    if not isinstance(values, dict):
                        print(f"{section} = {values}")
                        continue
                    print(f"[{section}]")
                    for key, value in values.items():
                        print(f"  {key} = {value!r}")
            sys.exit(0)

        if args.config_cmd == "validate":
            from .config_loader import ConfigError, require_runnable

            try:
                require_runnable(config)
            except ConfigError as e:
                print(f"❌ {e}", file=sys.stderr)
                sys.exit(1)
            print("✅ Configuration is valid")
            sys.exit(0)

    print(f"snapsync {args.cmd}: unknown command", file=sys.stderr)
    sys.exit(2)


if __name__ == "__main__":
    main()
