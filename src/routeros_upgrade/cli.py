"""CLI interface for the RouterOS upgrade manager."""

import click
import yaml

from routeros_upgrade import __version__
from routeros_upgrade import constants
from routeros_upgrade.config import Config, preflight_checks, resolve_work_dir
from routeros_upgrade.credentials import CredentialManager
from routeros_upgrade.discovery import InventoryBuilder
from routeros_upgrade.exceptions import (
    ConfigurationError, DeviceError, InterruptedRun, RouterOSUpgradeError, StructuralError
)
from routeros_upgrade.logging_config import get_log_files, setup_logging
from routeros_upgrade.models import DeviceRecord
from routeros_upgrade.orchestrator import BatchOrchestrator
from routeros_upgrade.registry import RegistryStore, render_registry, resolve_registry_path
from routeros_upgrade.upgrade_manager import UpgradeManager
from routeros_upgrade.version_resolver import parse_version_spec


@click.group()
@click.version_option(version=__version__)
@click.option('--work-dir', type=click.Path(),
              help=f'Working directory. Priority: CLI flag > ${constants.WORK_DIR_ENV_VAR} > ~/{constants.WORK_DIR_POINTER_FILE} > ~/routeros-upgrade')
@click.option('-o', '--options-file', type=click.Path(dir_okay=False),
              help='YAML options file (default: <work-dir>/config/config.yaml)')
@click.option('-d', '--debug', is_flag=True, help='Enable debug output')
@click.option('-l', '--log', 'log_to_file', is_flag=True, help='Also write JSON and text log files')
@click.pass_context
def main(ctx, work_dir, options_file, debug, log_to_file):
    """RouterOS Upgrade Manager - firmware upgrades for MikroTik fleets."""
    ctx.ensure_object(dict)

    try:
        work = resolve_work_dir(work_dir)
        config = Config(config_file=options_file, work_dir=work.path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    log_level = "DEBUG" if debug else config.log_level
    try:
        logger = setup_logging(
            config.logs_dir,
            log_level,
            console_output=True,
            file_output=log_to_file
        )
    except (OSError, AttributeError) as e:
        raise click.ClickException(f"Cannot set up logging: {e}")

    ctx.obj['config'] = config
    ctx.obj['work_dir'] = work
    ctx.obj['logger'] = logger
    ctx.obj['log_to_file'] = log_to_file

    logger.debug(work.describe())
    logger.debug(f"Configuration loaded: {config.config_file}")
    for log_file in get_log_files(logger):
        logger.debug(f"Logging to {log_file}")


# ============================================================================
# Inventory Commands
# ============================================================================

@main.command()
@click.argument('host')
@click.option('-c', '--csv', 'csv_file', help='Write the registry to this file instead of stdout')
@click.option('--yes', is_flag=True, help='Overwrite an existing registry without asking')
@click.pass_context
def build(ctx, host, csv_file, yes):
    """Build a device registry from HOST's neighbor table."""
    config = ctx.obj['config']
    logger = ctx.obj['logger']

    try:
        config.validate()
        path = resolve_registry_path(csv_file, for_write=True) if csv_file else None
    except StructuralError as e:
        raise click.ClickException(str(e))

    if path is not None and path.exists() and not yes:
        if not click.confirm(f"File {path} exists. Overwrite?", default=False, err=True):
            logger.info("Aborted by user")
            ctx.exit(0)

    credential_manager = CredentialManager(cli_suffix=config.cli_suffix)

    try:
        credentials = credential_manager.credentials()
        records = InventoryBuilder(config).build(host, credentials)
    except click.Abort:
        logger.info("Aborted by user at the credential prompt")
        ctx.exit(0)
    except (StructuralError, DeviceError) as e:
        logger.error(f"Inventory build failed: {e}")
        raise click.ClickException(str(e))

    if path is not None:
        RegistryStore.create(path, records)
        logger.info(f"Inventory saved to {path}")
    else:
        click.echo(render_registry(records), nl=False)
        logger.info("Inventory output to console")


# ============================================================================
# Upgrade Commands
# ============================================================================

def _select_devices(csv_file, filter_pattern, host):
    """Resolve the device list and the registry (None in direct mode)."""
    if csv_file:
        registry = RegistryStore(resolve_registry_path(csv_file))
        return registry, registry.filter(filter_pattern)
    return None, [DeviceRecord.for_host(host)]


@main.command()
@click.argument('host', required=False)
@click.option('-r', '--version', 'version_spec', required=True,
              help='Target RouterOS version: 7.18 (latest fix) or 7.18.2 (exact)')
@click.option('-c', '--csv', 'csv_file', help='Registry file of devices to upgrade')
@click.option('-f', '--filter', 'filter_pattern', help='Board name or identity pattern (requires --csv)')
@click.option('-t', '--test', 'test_mode', is_flag=True, help='Simulate upgrades without changing anything')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def upgrade(ctx, host, version_spec, csv_file, filter_pattern, test_mode, yes):
    """Upgrade HOST, or every registry device matching --filter.

    Device failures are recorded in the registry and listed in the summary;
    they do not change the exit status.
    """
    config = ctx.obj['config']
    logger = ctx.obj['logger']

    if csv_file:
        if host or not filter_pattern:
            raise click.UsageError("With --csv, --filter is required and HOST must not be given")
    elif not host or filter_pattern:
        raise click.UsageError("HOST is required without --csv, and --filter requires --csv")

    try:
        spec = parse_version_spec(version_spec)
        preflight_checks(config, logging_enabled=ctx.obj['log_to_file'])
        registry, records = _select_devices(csv_file, filter_pattern, host)

        manager = UpgradeManager(config, registry=registry, simulate=test_mode)
        credential_manager = CredentialManager(cli_suffix=config.cli_suffix)
        orchestrator = BatchOrchestrator(config, manager, credential_manager, registry=registry)
        release = orchestrator.resolve_release(spec)
    except StructuralError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))

    click.echo(f"Target version: {release.version} ({release.architecture})")
    for artifact in release.artifacts:
        click.echo(f"  {artifact.filename}")
    if registry is not None:
        click.echo(f"Hosts matched by filter '{filter_pattern}':")
        for record in records:
            click.echo(f"  Identity: {record.identity}, Model: {record.board_name}")

    verb = "Simulate" if test_mode else "Perform"
    if not yes and not click.confirm(f"{verb} upgrades for {len(records)} host(s)?", default=False):
        logger.info("Aborted by user")
        ctx.exit(0)

    try:
        credential_manager.credentials()
    except click.Abort:
        logger.info("Aborted by user at the credential prompt")
        ctx.exit(0)
    except ConfigurationError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))

    credential_manager.install_signal_handlers()
    try:
        result = orchestrator.run_release(records, release)
    except InterruptedRun as e:
        logger.error(f"{e}; credential files removed, registry left as last written")
        ctx.exit(128 + e.signum)
    except StructuralError as e:
        logger.error(str(e))
        raise click.ClickException(str(e))
    finally:
        credential_manager.cleanup()
        credential_manager.restore_signal_handlers()

    if result.simulated:
        click.echo("[TEST MODE] No changes were made")
    click.echo(result.summary_line())


# ============================================================================
# Registry Commands
# ============================================================================

@main.group()
def registry():
    """Inspect the device registry."""
    pass


@registry.command(name='list')
@click.option('-c', '--csv', 'csv_file', required=True, help='Registry file')
@click.option('-f', '--filter', 'filter_pattern', help='Board name or identity pattern')
@click.pass_context
def list_devices(ctx, csv_file, filter_pattern):
    """List registry devices."""
    try:
        store = RegistryStore(resolve_registry_path(csv_file))
        records = store.filter(filter_pattern) if filter_pattern else store.read_all()
    except RouterOSUpgradeError as e:
        raise click.ClickException(str(e))

    click.echo(f"{'IDENTITY':<24} {'ADDRESS':<40} {'BOARD':<20} {'VERSION':<10} STATUS")
    for record in records:
        click.echo(
            f"{record.identity:<24} {record.ip_addr:<40} {record.board_name:<20} "
            f"{record.version:<10} {record.status}"
        )
    click.echo(f"\n{len(records)} device(s)")


# ============================================================================
# Configuration Commands
# ============================================================================

@main.group()
def config():
    """Manage configuration."""
    pass


@config.command(name='set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def set_config(ctx, key, value):
    """Set configuration value."""
    config = ctx.obj['config']
    logger = ctx.obj['logger']

    # YAML scalars: "30" -> 30, "true" -> True, "x86" -> "x86"
    try:
        parsed = yaml.safe_load(value)
    except yaml.YAMLError:
        parsed = value
    if isinstance(parsed, (dict, list)) or parsed is None:
        parsed = value

    config.set(key, parsed, save=False)
    try:
        config.validate()
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    config.save()
    logger.info(f"Configuration updated: {key} = {parsed}")
    click.echo(f"Set {key} = {parsed}")


@config.command()
@click.pass_context
def show(ctx):
    """Show current configuration."""
    config = ctx.obj['config']
    work = ctx.obj['work_dir']

    click.echo("Current Configuration:")
    click.echo(f"  {work.describe()}")
    click.echo(f"  Config File: {config.config_file}")
    click.echo(f"  Image Directory: {config.image_dir}")
    click.echo(f"  Backup Directory: {config.backup_dir}")
    click.echo(f"  Log Directory: {config.logs_dir}")
    click.echo()
    click.echo(yaml.safe_dump(config.as_dict(), default_flow_style=False, sort_keys=True), nl=False)


if __name__ == '__main__':
    main()
