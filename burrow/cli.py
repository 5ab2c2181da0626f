#!/usr/bin/env python3
"""
Command-line entry point for one-off operations and the API server.

    burrow init                     create key file and starter config
    burrow rekey                    regenerate the key file from the password
    burrow backup SERVICE
    burrow restore SERVICE ARTIFACT
    burrow list [SERVICE]
    burrow cleanup [--service NAME]
    burrow validate                 check paths, schedules, containers and backends
    burrow serve [--port PORT]
"""

import argparse
import getpass
import logging
import os
import sys
import threading

from burrow.config import Config, ConfigError, DEFAULT_CONFIG_DIR, load_settings, write_default_config
from burrow.utils.crypto import CryptoError, generate_and_save_key


logger = logging.getLogger('burrow.cli')

MIN_PASSWORD_LENGTH = 8


def _read_password(confirm: bool = True) -> str:
    password = getpass.getpass('Encryption password: ')
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ConfigError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if confirm and getpass.getpass('Confirm password: ') != password:
        raise ConfigError("Passwords do not match")
    return password


def _key_path(args) -> str:
    return os.path.expanduser(args.key_file or Config.BURROW_KEY_FILE or os.path.join(DEFAULT_CONFIG_DIR, 'key'))


def cmd_init(args):
    key_path = _key_path(args)
    if os.path.exists(key_path):
        raise ConfigError(f"Key file already exists: {key_path} (use 'burrow rekey' to regenerate)")

    generate_and_save_key(_read_password(), key_path)
    print(f"Key written to {key_path}")

    config_path = os.path.expanduser(args.config)
    if os.path.exists(config_path):
        print(f"Keeping existing config {config_path}")
    else:
        write_default_config(config_path, key_path)
        print(f"Starter config written to {config_path}")


def cmd_rekey(args):
    key_path = _key_path(args)
    # The salt comes from the password, so the same password yields the same key
    generate_and_save_key(_read_password(), key_path)
    print(f"Key written to {key_path}")


def _runner(args):
    from burrow.backup.executor import build_executor
    from burrow.backup.retention import RetentionManager
    from burrow.runner import Runner

    settings = load_settings(args.config, key_file=args.key_file or Config.BURROW_KEY_FILE)
    cancel_event = threading.Event()
    executor = build_executor(settings, cancel_event=cancel_event, logger=logging.getLogger('burrow.backup'))
    retention = RetentionManager(settings, executor.backends, logger=logging.getLogger('burrow.retention'))
    return Runner(executor, retention, cancel_event=cancel_event)


def cmd_backup(args):
    runner = _runner(args)
    try:
        artifact = runner.backup(args.service)
    finally:
        runner.close()
    print(f"{artifact.name} ({artifact.size} bytes) -> {', '.join(artifact.backends)}")


def cmd_restore(args):
    runner = _runner(args)
    try:
        runner.restore(args.service, args.artifact)
    finally:
        runner.close()
    print(f"Restored {args.artifact}")


def cmd_list(args):
    runner = _runner(args)
    try:
        listing = runner.executor.list_backups(args.service)
    finally:
        runner.close()

    for service, per_backend in listing.items():
        print(f"{service}:")
        for backend, files in per_backend.items():
            print(f"  {backend}:")
            if not files:
                print("    (none)")
            for f in files:
                print(f"    {f.name}  {f.size:>12}  {f.mod_time}")


def cmd_cleanup(args):
    runner = _runner(args)
    try:
        deleted = runner.cleanup(args.service)
    finally:
        runner.close()

    for service, per_backend in deleted.items():
        for backend, count in per_backend.items():
            print(f"{service}/{backend}: deleted {count}")


def _check_directory(path: str):
    if not os.path.isdir(path):
        raise ConfigError(f"Not a directory: {path}")
    os.listdir(path)


def cmd_validate(args):
    from burrow.backup.container import LifecycleError
    from burrow.backup.storage import StorageError
    from burrow.scheduler import parse_schedule

    runner = _runner(args)
    executor = runner.executor
    problems = []

    def check(label, run):
        try:
            run()
        except (ConfigError, LifecycleError, StorageError, OSError) as e:
            problems.append(label)
            print(f"FAIL  {label}: {e}")
        else:
            print(f"ok    {label}")

    try:
        for service in sorted(executor.settings.services.values(), key=lambda s: s.name):
            check(f"{service.name}: path {service.path}", lambda s=service: _check_directory(s.path))
            if service.schedule:
                check(f"{service.name}: schedule {service.schedule}", lambda s=service: parse_schedule(s))
            if service.container:
                check(
                    f"{service.name}: container {service.container}",
                    lambda s=service: executor.containers.validate(s.container)
                )
        for backend in executor.backends:
            check(f"backend {backend.name}", lambda b=backend: b.list(''))
    finally:
        runner.close()

    if problems:
        raise ConfigError(f"Validation failed: {len(problems)} check(s) did not pass")
    print("All checks passed")


def cmd_serve(args):
    from burrow import create_app

    app = create_app(args.env)
    app.run(host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='burrow', description='Encrypted service backups')
    p.add_argument('--config', default=Config.BURROW_CONFIG, help='Service configuration file')
    p.add_argument('--key-file', default=None, help='Override the key file named in the config')
    p.add_argument('-v', '--verbose', action='store_true', default=Config.VERBOSE, help='Debug logging')

    sub = p.add_subparsers(dest='cmd', required=True)

    sub.add_parser('init', help='Create key file and starter config').set_defaults(func=cmd_init)
    sub.add_parser('rekey', help='Regenerate the key file from the password').set_defaults(func=cmd_rekey)

    backup = sub.add_parser('backup', help='Back up a service now')
    backup.add_argument('service')
    backup.set_defaults(func=cmd_backup)

    restore = sub.add_parser('restore', help='Restore an artifact into a service')
    restore.add_argument('service')
    restore.add_argument('artifact')
    restore.set_defaults(func=cmd_restore)

    list_cmd = sub.add_parser('list', help='List artifacts on every backend')
    list_cmd.add_argument('service', nargs='?')
    list_cmd.set_defaults(func=cmd_list)

    cleanup = sub.add_parser('cleanup', help='Enforce retention')
    cleanup.add_argument('--service')
    cleanup.set_defaults(func=cmd_cleanup)

    sub.add_parser('validate', help='Check paths, schedules, containers and backends').set_defaults(func=cmd_validate)

    serve = sub.add_parser('serve', help='Run the API server and scheduler')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=int(os.environ.get('PORT', 5000)))
    serve.add_argument('--env', default=os.environ.get('BURROW_ENV', 'production'))
    serve.set_defaults(func=cmd_serve)

    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    logging.getLogger('burrow').setLevel(logging.DEBUG if args.verbose else logging.INFO)

    try:
        args.func(args)
    except (ConfigError, CryptoError) as e:
        logger.error(str(e))
        return 2
    except Exception as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
