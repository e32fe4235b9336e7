"""GitLab custom executor driver running each job in a throwaway libvirt VM.

Wire it into the runner's ``config.toml``::

    [runners.custom]
      config_exec = "libvirt-executor"
      config_args = ["config"]
      prepare_exec = "libvirt-executor"
      prepare_args = ["create", "-i", "debian-12.qcow2"]
      run_exec = "libvirt-executor"
      run_args = ["run"]
      cleanup_exec = "libvirt-executor"
      cleanup_args = ["cleanup"]
"""

import json
import logging
import sys
from pathlib import Path
from typing import Callable

import click
from pydantic import ValidationError

from libvirt_executor.config import USAGE_EXIT_CODE, ExecutorSettings, get_settings
from libvirt_executor.errors import UsageFailure
from libvirt_executor.failures import exit_code_for, report, resolve
from libvirt_executor.lifecycle import JobLifecycle, build_lifecycle
from libvirt_executor.libvirt import LibvirtManager
from libvirt_executor.models import CreateOptions, Outcome
from libvirt_executor.signals import cancellable
from libvirt_executor.ssh import SSHRemoteShell


DRIVER_NAME = "libvirt-executor"
DRIVER_VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _lifecycle(settings: ExecutorSettings) -> JobLifecycle:
    return build_lifecycle(
        settings, LibvirtManager(settings), SSHRemoteShell(settings)
    )


def _finish(
    ctx: click.Context,
    settings: ExecutorSettings,
    action: Callable[[JobLifecycle], Outcome],
) -> None:
    with cancellable():
        outcome = resolve(lambda: action(_lifecycle(settings)))
    logger.debug("verb finished outcome=%s", outcome.value)
    ctx.exit(exit_code_for(outcome, settings))


@click.group(
    no_args_is_help=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)
@click.version_option(version=DRIVER_VERSION, prog_name=DRIVER_NAME)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Run GitLab CI jobs inside throwaway libvirt VMs."""
    settings = get_settings()
    setup_logging(settings.log_level)
    settings.validate_runtime()
    ctx.obj = settings


@cli.command()
@click.option(
    "-i",
    "--image",
    "base_image",
    required=True,
    help="Filename of the base image inside the base images directory.",
)
@click.option("-c", "--vcpus", type=int, default=4, show_default=True, help="VCPU count.")
@click.option("-r", "--ram", type=int, default=4096, show_default=True, help="RAM in MiB.")
@click.option(
    "-n", "--network", default="default", show_default=True, help="Network label."
)
@click.pass_context
def create(
    ctx: click.Context, base_image: str, vcpus: int, ram: int, network: str
) -> None:
    """Create the job VM and wait until it is reachable over ssh."""
    options = CreateOptions(
        base_image=base_image, vcpu_count=vcpus, ram_mb=ram, network_label=network
    )
    _finish(ctx, ctx.obj, lambda lifecycle: lifecycle.create(options))


@cli.command()
@click.argument(
    "script", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.argument("stage", required=False)
@click.pass_context
def run(ctx: click.Context, script: Path, stage: str | None) -> None:
    """Pipe SCRIPT into a shell on the job VM."""
    _finish(ctx, ctx.obj, lambda lifecycle: lifecycle.run(script, stage))


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Destroy the job VM and delete its disk."""
    _finish(ctx, ctx.obj, lambda lifecycle: lifecycle.cleanup())


@cli.command("config")
def config_cmd() -> None:
    """Print the driver description for the runner's config stage."""
    click.echo(json.dumps({"driver": {"name": DRIVER_NAME, "version": DRIVER_VERSION}}))


def _validation_message(exc: ValidationError) -> str:
    problems = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]
    return "invalid configuration: " + "; ".join(problems)


def main(argv: list[str] | None = None) -> None:
    try:
        code = cli.main(args=argv, prog_name=DRIVER_NAME, standalone_mode=False)
    except click.UsageError as exc:
        if exc.ctx is not None:
            click.echo(exc.ctx.get_usage(), err=True)
        report(exc)
        code = USAGE_EXIT_CODE
    except (click.ClickException, click.Abort, UsageFailure) as exc:
        report(exc)
        code = USAGE_EXIT_CODE
    except ValidationError as exc:
        click.echo(f"ERROR: {_validation_message(exc)}", err=True)
        code = USAGE_EXIT_CODE
    except Exception as exc:  # noqa: BLE001
        logger.debug("unhandled failure", exc_info=exc)
        report(exc)
        code = _system_failure_code()
    sys.exit(code or 0)


def _system_failure_code() -> int:
    try:
        return get_settings().system_failure_exit_code
    except Exception:  # noqa: BLE001
        return ExecutorSettings.model_fields["system_failure_exit_code"].default


if __name__ == "__main__":
    main()
