"""
S1 Parcel Composites — CLI Entry Point
======================================
Command-line interface built with Click.  Installed as the
``geo-s1-parcels`` command via ``pyproject.toml``.

Usage:
    geo-s1-parcels --config run.json --output exports/
    geo-s1-parcels --config run.json --output exports/ --backend earthengine
    geo-s1-parcels --config run.json --output exports/ --dry-run

Run ``geo-s1-parcels --help`` for a full list of options.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from shared.python.exceptions import ParcelCompositesError

from s1_parcel_composites.config import BACKENDS
from s1_parcel_composites.pipeline import ParcelCompositePipeline


@click.command(
    name="geo-s1-parcels",
    help=(
        "Build 10-day Sentinel-1 VV/VH composites and sample them on land "
        "parcels, writing one CSV per region subset.\n\n"
        "Reads a JSON configuration file that defines the date range, "
        "regions, strata, parcel file, sampling and export settings."
    ),
)
@click.option(
    "--config", "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, file_okay=True, dir_okay=False, path_type=Path),
    help="Path to the JSON run configuration file.",
)
@click.option(
    "--output", "-o",
    "output_path",
    required=True,
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    help="Root directory for local CSV exports.",
)
@click.option(
    "--backend", "-b",
    type=click.Choice(BACKENDS),
    default=None,
    help="Override the execution backend from the config.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Log windows, band names and subset sizes without computing.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug-level logging output.",
)
def main(
    config_path: Path,
    output_path: Path,
    backend: Optional[str],
    dry_run: bool,
    verbose: bool,
) -> None:
    """Run the composite sampling pipeline.

    Exits 1 on a configuration/input error or when any subset fails,
    2 on unexpected errors.
    """
    try:
        pipeline = ParcelCompositePipeline(
            input_path=config_path,
            output_path=output_path,
            verbose=verbose,
            dry_run=dry_run,
            backend=backend,
        )
        pipeline.run()
    except ParcelCompositesError as exc:
        click.secho(f"Error: {exc.message}", fg="red", err=True)
        raise SystemExit(1) from exc
    except Exception as exc:
        click.secho(f"Unexpected error: {exc}", fg="red", err=True)
        raise SystemExit(2) from exc

    if pipeline.failed_subsets:
        click.secho(
            f"Failed subsets: {', '.join(pipeline.failed_subsets)}", fg="red", err=True
        )
        raise SystemExit(1)

    exported = sum(1 for o in pipeline.outcomes if o.ok)
    if not dry_run:
        click.secho(f"✓ {exported} subset export(s) completed.", fg="green")


if __name__ == "__main__":
    main()  # type: ignore[call-arg]
