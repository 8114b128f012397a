"""proofbench CLI."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple

import click

from .backends import ADAPTERS
from .bench import BenchmarkResult, run_benchmark
from .config import VerifyPolicy, load_config_file, merge_config, parse_env_pairs
from .errors import ProofBenchError
from .report import DURATION_UNIT

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


def _print_summary(result: BenchmarkResult) -> None:
    from rich.box import ROUNDED
    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(
        title=f"{result.csv_path.name}",
        box=ROUNDED,
        border_style="cyan",
        show_header=True,
        header_style="bold",
    )
    table.add_column(result.param_column, style="white")
    table.add_column(f"duration ({DURATION_UNIT})", justify="right")
    table.add_column("proof bytes", justify="right")
    table.add_column("trace length", justify="right")
    table.add_column("status")

    for outcome in result.outcomes:
        if outcome.record is not None:
            record = outcome.record
            status = "[green]ok[/green]" + (" (compressed)" if record.compressed else "")
            table.add_row(
                str(outcome.parameter),
                f"{record.duration:.1f}",
                str(record.proof_size_bytes),
                str(record.execution_trace_length),
                status,
            )
        else:
            error = outcome.error
            style = "red bold" if error.is_verification_failure else "red"
            table.add_row(str(outcome.parameter), "-", "-", "-", f"[{style}]{error.stage.value} failed[/{style}]")

    console.print()
    console.print(table)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="INFO",
    envvar="PROOFBENCH_LOG_LEVEL",
    show_default=True,
)
def cli(log_level: str) -> None:
    """proofbench: benchmark zero-knowledge proving backends."""
    configure_logging(log_level)


@cli.command("backends")
def backends_command() -> None:
    """List the registered proving backends."""
    for name, adapter_cls in sorted(ADAPTERS.items()):
        compress = "compression" if adapter_cls.supports_compression else "no compression"
        click.echo(f"{name}: {adapter_cls.artifact_kind} artifacts, {compress}")
        for option, default in adapter_cls.option_specs().items():
            click.echo(f"    {option} (default: {default})")


@cli.command("run")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON file with benchmark settings; command-line flags take precedence.")
@click.option("--backend", type=click.Choice(sorted(ADAPTERS)), envvar="PROOFBENCH_BACKEND", help="Proving backend.")
@click.option("-g", "--guest", type=str, envvar="PROOFBENCH_GUEST", help="Guest program (package) name.")
@click.option("--guest-dir", type=click.Path(file_okay=False, path_type=Path), envvar="PROOFBENCH_GUEST_DIR",
              help="Directory containing the guest crate or workspace.")
@click.option("-a", "--arg", "args", multiple=True, help="Benchmark input; repeat for each input.")
@click.option("--entry-point", type=str, help="Function to invoke (zkwasm defaults to the guest name).")
@click.option("--param-column", type=str, help="Name of the parameter column in the CSV.")
@click.option("-e", "--execution-step-size", type=click.IntRange(min=1), help="zkwasm: execution steps per fold.")
@click.option("-m", "--memory-step-size", type=click.IntRange(min=1), help="zkwasm: memory operations per fold.")
@click.option("--app-log-blowup", type=click.IntRange(min=1), help="openvm: FRI log blowup factor.")
@click.option("--extensions", type=str, help="openvm: comma-separated VM extensions.")
@click.option("--compress/--no-compress", default=None, help="Compress proofs before verification.")
@click.option("--output-root", type=click.Path(file_okay=False, path_type=Path), envvar="PROOFBENCH_OUTPUT_ROOT",
              help="Directory for CSV outputs (default: benchmark_outputs).")
@click.option("--target-dir", type=click.Path(file_okay=False, path_type=Path), envvar="PROOFBENCH_TARGET_DIR",
              help="Toolchain build output root (default: <guest-dir>/target).")
@click.option("--work-root", type=click.Path(file_okay=False, path_type=Path),
              help="Scratch directory for setup material and run records.")
@click.option("--workers", "max_workers", type=click.IntRange(min=1), help="Inputs proved concurrently (default: 1).")
@click.option("--on-verify-failure", "verify_policy", type=click.Choice(VerifyPolicy.ALL),
              help="Stop the batch or keep going when a proof fails verification (default: abort).")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), envvar="PROOFBENCH_TIMEOUT",
              help="Seconds allowed for each external build/prover process.")
@click.option("--build-env", multiple=True, help="KEY=VALUE exported to the guest build; repeatable.")
@click.option("--keep-artifacts/--no-keep-artifacts", default=None, help="Keep per-input proofs and instances.")
def run_command(
    config_file: Path | None,
    backend: str | None,
    guest: str | None,
    guest_dir: Path | None,
    args: Tuple[str, ...],
    entry_point: str | None,
    param_column: str | None,
    execution_step_size: int | None,
    memory_step_size: int | None,
    app_log_blowup: int | None,
    extensions: str | None,
    compress: bool | None,
    output_root: Path | None,
    target_dir: Path | None,
    work_root: Path | None,
    max_workers: int | None,
    verify_policy: str | None,
    timeout: float | None,
    build_env: Tuple[str, ...],
    keep_artifacts: bool | None,
) -> None:
    """Build a guest, prove it for every input and write a metrics CSV."""
    if backend == "openvm" and (execution_step_size or memory_step_size):
        raise click.UsageError("step sizes only apply to the zkwasm backend")
    if backend == "zkwasm" and (app_log_blowup or extensions):
        raise click.UsageError("FRI options only apply to the openvm backend")

    backend_options = {
        "zkwasm": {"execution_step_size": execution_step_size, "memory_step_size": memory_step_size},
        "openvm": {"app_log_blowup": app_log_blowup, "extensions": extensions},
    }
    try:
        file_values = load_config_file(config_file) if config_file else {}
        selected = backend or file_values.get("backend")
        overrides = {
            "backend": backend,
            "guest": guest,
            "guest_dir": guest_dir,
            "inputs": list(args),
            "entry_point": entry_point,
            "param_column": param_column,
            "compress": compress,
            "output_root": output_root,
            "target_dir": target_dir,
            "work_root": work_root,
            "backend_options": backend_options.get(selected, {}),
            "build_env": parse_env_pairs(build_env),
            "max_workers": max_workers,
            "verify_policy": verify_policy,
            "timeout": timeout,
            "keep_artifacts": keep_artifacts,
        }
        config = merge_config(file_values, overrides)
        result = run_benchmark(config)
    except ProofBenchError as exc:
        raise click.ClickException(str(exc)) from exc

    _print_summary(result)
    click.echo(f"metrics written to {result.csv_path}")
    if result.failures_path:
        click.echo(f"failures recorded in {result.failures_path}", err=True)
    if result.run_meta_path:
        click.echo(f"run metadata: {result.run_meta_path}")
    if result.aborted is not None:
        raise click.ClickException(f"verification failure stopped the batch: {result.aborted.error}")


def main() -> None:
    cli(prog_name="proofbench")


if __name__ == "__main__":
    main()
