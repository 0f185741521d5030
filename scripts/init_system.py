#!/usr/bin/env python3
"""Initialize the RouterOS upgrade work directory."""

import argparse
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from routeros_upgrade import constants
from routeros_upgrade.config import Config, pointer_file_path, remember_work_dir, resolve_work_dir
from routeros_upgrade.exceptions import ConfigurationError
from routeros_upgrade.logging_config import setup_logging


def main():
    """Create work directories and a default configuration file."""
    parser = argparse.ArgumentParser(
        description="Initialize RouterOS Upgrade Manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Work directory resolution priority:
  1. --work-dir flag (this script)
  2. ${constants.WORK_DIR_ENV_VAR} environment variable
  3. ~/{constants.WORK_DIR_POINTER_FILE} (written by this script)
  4. Default: {constants.DEFAULT_WORK_DIR}

Examples:
  python scripts/init_system.py --work-dir ~/mikrotik

  export {constants.WORK_DIR_ENV_VAR}=~/mikrotik
  python scripts/init_system.py
"""
    )
    parser.add_argument(
        '--work-dir',
        type=str,
        help='Working directory for packages, backups, logs and config'
    )
    parser.add_argument(
        '--no-remember',
        action='store_true',
        help=f'Do not write ~/{constants.WORK_DIR_POINTER_FILE}'
    )
    args = parser.parse_args()

    print("Initializing RouterOS Upgrade Manager...")
    print()

    try:
        work = resolve_work_dir(args.work_dir)
    except ConfigurationError as e:
        print(f"✗ {e}")
        sys.exit(1)
    work_dir = work.path
    print(work.describe())
    print()

    config = Config(work_dir=work_dir)
    config.ensure_directories()
    if not config.config_file.exists():
        config.save()
        print(f"✓ Wrote default configuration: {config.config_file}")
    else:
        print(f"⊘ Kept existing configuration: {config.config_file}")

    print(f"✓ Package repository: {config.image_dir}")
    print(f"✓ Backup directory: {config.backup_dir}")
    print(f"✓ Log directory: {config.logs_dir}")

    if not args.no_remember:
        try:
            pointer = remember_work_dir(work_dir)
            print(f"✓ Remembered work directory in {pointer}")
        except OSError as e:
            print(f"⚠ Could not write {pointer_file_path()}: {e}")
    else:
        print("⊘ Work directory not remembered (--no-remember)")

    logger = setup_logging(config.logs_dir, "INFO", console_output=False, file_output=True)
    logger.info("Work directory initialized")

    print()
    print("Next steps:")
    print("1. Place RouterOS packages under the repository, one directory per series:")
    print(f"   {config.image_dir}/7.18/routeros-7.18.2-arm64.npk")
    print()
    print("2. If the repository holds more than one architecture, pick one:")
    print("   routeros-upgrade config set repository.architecture arm64")
    print()
    print("3. Build a registry from a seed device and upgrade:")
    print("   routeros-upgrade build 192.0.2.1 -c mikrotik.csv")
    print("   routeros-upgrade upgrade -r 7.18 -c mikrotik.csv -f RB5009")
    print()
    print("Initialization complete!")


if __name__ == "__main__":
    main()
