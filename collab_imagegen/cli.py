"""Thin CLI wrapper for collab_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from collab_imagegen import __version__
from collab_imagegen.config import get_settings, print_settings_json

app = typer.Typer(
    name="collab-imagegen",
    help="Collab Image Generator - build and verify the collab server image",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "running": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"collab-imagegen version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Collab Image Generator - build and verify the collab server image."""
    _configure_logging(get_settings().log_level)


def _load_pipeline(path: Path | None) -> Any:
    """Load a pipeline definition or exit with an error."""
    import yaml

    from collab_imagegen.pipeline.io import resolve_pipeline

    if path is None:
        path = get_settings().pipeline_file
    try:
        return resolve_pipeline(path)
    except FileNotFoundError:
        console.print(f"[red]Pipeline file not found: {path}[/red]")
        raise typer.Exit(code=1) from None
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid pipeline definition {path}:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None


def _build_to_dict(build: Any) -> dict[str, Any]:
    return {
        "id": build.id,
        "pipeline": build.pipeline_name,
        "status": build.status,
        "image_tag": build.image_tag,
        "image_id": build.image_id,
        "cache_key": build.cache_key,
        "panic_policy": build.panic_policy,
        "build_identifier": build.build_identifier,
        "failed_state": build.failed_state,
        "requested_at": build.requested_at.isoformat() if build.requested_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
        "log_path": build.log_path,
        "dockerfile_path": build.dockerfile_path,
        "manifest_path": build.manifest_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "artifact_count": len(build.artifacts),
    }


def _artifact_to_dict(artifact: Any) -> dict[str, Any]:
    return {
        "path": artifact.path,
        "kind": artifact.kind,
        "env_var": artifact.env_var,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "mode": f"{artifact.mode:o}",
    }


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  State directory:     {settings.state_dir}")
        console.print(f"  Builds directory:    {settings.builds_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        pipeline_file = settings.pipeline_file or "(built-in default)"
        console.print(f"  Pipeline file:       {pipeline_file}")
        console.print()
        console.print("[bold]Docker:[/bold]")
        console.print(f"  Docker binary:       {settings.docker_bin}")
        repository = settings.image_repository or "(from pipeline)"
        console.print(f"  Image repository:    {repository}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Verify images:       {settings.verify_images}")
        console.print(f"  Allow empty assets:  {settings.allow_empty_assets}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Docker timeout:      {settings.docker_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


@app.command()
def render(
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline definition (YAML/JSON)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the Dockerfile to this path"),
    ] = None,
) -> None:
    """Render the pipeline as a multi-stage Dockerfile."""
    from collab_imagegen.builds.dockerfile import render_dockerfile, write_dockerfile
    from collab_imagegen.pipeline.steps import PipelineDefinitionError

    pipeline = _load_pipeline(pipeline_file)
    try:
        text = render_dockerfile(pipeline)
    except PipelineDefinitionError as e:
        console.print(f"[red]Invalid pipeline ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if output is None:
        typer.echo(text, nl=False)
    else:
        write_dockerfile(text, output)
        console.print(f"[green]Wrote Dockerfile to {output}[/green]")


@app.command()
def check(
    source: Annotated[Path, typer.Argument(help="Source tree to check")],
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline definition (YAML/JSON)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check a source tree and the pipeline without building.

    Fails when the configuration override or an asset directory is
    missing, or when the pipeline definition breaks an invariant.
    """
    from collab_imagegen.builds.sources import SourceCheckError, preflight
    from collab_imagegen.pipeline.steps import PipelineDefinitionError, compose_stages

    pipeline = _load_pipeline(pipeline_file)
    settings = get_settings()
    try:
        compose_stages(pipeline)
        snapshot = preflight(source, pipeline, settings.allow_empty_assets)
    except (SourceCheckError, PipelineDefinitionError) as e:
        console.print(f"[red]Check failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(
            data={
                "source_dir": str(snapshot.source_dir),
                "override_sha256": snapshot.override_sha256,
                "asset_hashes": snapshot.asset_hashes,
                "asset_files": {k: len(v) for k, v in snapshot.asset_files.items()},
            }
        )
    else:
        console.print(f"[green]Source tree OK: {snapshot.source_dir}[/green]")
        console.print(f"  Override sha256: {snapshot.override_sha256[:16]}...")
        for destination, files in snapshot.asset_files.items():
            console.print(f"  {destination}: {len(files)} files")


@app.command()
def build(
    source: Annotated[Path, typer.Argument(help="Source tree (build context)")],
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline definition (YAML/JSON)"),
    ] = None,
    panic: Annotated[
        str | None,
        typer.Option("--panic", help="Panic policy: unwind or abort"),
    ] = None,
    build_id: Annotated[
        str,
        typer.Option("--build-id", help="Opaque build identifier (e.g. commit SHA)"),
    ] = "",
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Final image reference"),
    ] = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Disable the docker layer cache"),
    ] = False,
    skip_verify: Annotated[
        bool,
        typer.Option("--skip-verify", help="Promote without verifying contents"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the runtime image from a source tree."""
    from pydantic import ValidationError

    from collab_imagegen.builds.service import BuildServiceError, run_pipeline
    from collab_imagegen.db import create_all_tables, get_engine, get_session_factory
    from collab_imagegen.pipeline.schema import BuildParameters
    from collab_imagegen.types import PanicPolicy

    pipeline = _load_pipeline(pipeline_file)

    try:
        policy = PanicPolicy(panic) if panic else None
    except ValueError:
        console.print(f"[red]Invalid panic policy: {panic}[/red]")
        console.print("Valid values: unwind, abort")
        raise typer.Exit(code=1) from None

    try:
        parameters = BuildParameters(panic_policy=policy, build_identifier=build_id)
    except ValidationError as e:
        console.print("[red]Invalid build parameters:[/red]")
        for err in e.errors():
            console.print(f"  {err['msg']}", markup=False)
        raise typer.Exit(code=1) from None

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        if not json_output:
            console.print(f"[blue]Building {pipeline.name} from {source}...[/blue]")
        try:
            record, result = run_pipeline(
                session,
                pipeline,
                source,
                parameters,
                settings=settings,
                tag=tag,
                no_cache=no_cache,
                verify=False if skip_verify else None,
            )
        except BuildServiceError as e:
            console.print(f"[red]Error ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

        if json_output:
            console.print_json(data=_build_to_dict(record))
        elif result.success:
            console.print(f"[green]Build #{record.id} succeeded[/green]")
            console.print(f"  Image:     {record.image_tag}")
            console.print(f"  Image ID:  {record.image_id}")
            console.print(f"  Artifacts: {len(record.artifacts)}")
            if record.manifest_path:
                console.print(f"  Manifest:  {record.manifest_path}")
        else:
            console.print(f"[red]Build #{record.id} failed ({result.code})[/red]")
            if record.failed_state:
                console.print(f"  State: {record.failed_state}")
            console.print(f"  {result.message}", markup=False)
            if record.log_path:
                console.print(f"  Log: {record.log_path}")

        if not result.success:
            raise typer.Exit(code=1)


@app.command()
def verify(
    image: Annotated[str, typer.Argument(help="Image reference to verify")],
    source: Annotated[
        Path,
        typer.Option("--source", "-s", help="Source tree the image was built from"),
    ],
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline definition (YAML/JSON)"),
    ] = None,
    build_id: Annotated[
        str | None,
        typer.Option("--build-id", help="Expected build identifier"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Verify an existing image against the pipeline and a source tree."""
    import tempfile
    from dataclasses import asdict

    from collab_imagegen.builds.artifacts import (
        ImageVerificationError,
        parse_image_config,
        read_image_files,
        verify_image,
    )
    from collab_imagegen.builds.runner import (
        DockerCommandError,
        export_image_filesystem,
        inspect_image,
    )
    from collab_imagegen.builds.sources import SourceCheckError, preflight

    pipeline = _load_pipeline(pipeline_file)
    settings = get_settings()

    try:
        snapshot = preflight(source, pipeline, settings.allow_empty_assets)
        image_config = parse_image_config(
            inspect_image(image, settings.docker_bin, settings.docker_timeout)
        )
        with tempfile.TemporaryDirectory(prefix="collab_verify_") as tmp:
            rootfs = export_image_filesystem(
                image,
                Path(tmp) / "rootfs.tar",
                settings.docker_bin,
                settings.docker_timeout,
            )
            files, entries = read_image_files(rootfs)
        artifacts = verify_image(
            pipeline, image_config, files, entries, snapshot, build_identifier=build_id
        )
    except (SourceCheckError, DockerCommandError, ImageVerificationError) as e:
        console.print(f"[red]Verification failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(
            data={
                "image": image,
                "image_id": image_config.image_id,
                "artifacts": [asdict(a) for a in artifacts],
            }
        )
    else:
        console.print(f"[green]Image {image} verified[/green]")
        for a in artifacts:
            env = f" (${a.env_var})" if a.env_var else ""
            console.print(f"  {a.path}{env}  {a.size_bytes:,} bytes", markup=False)


builds_app = typer.Typer(help="Inspect build records")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    pipeline_name: Annotated[
        str | None,
        typer.Option("--pipeline", "-p", help="Filter by pipeline name"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from collab_imagegen.builds.service import list_builds
    from collab_imagegen.db import create_all_tables, get_engine, get_session_factory
    from collab_imagegen.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        builds = list_builds(
            session,
            pipeline_name=pipeline_name,
            status=status_filter,
            limit=limit,
        )

        if not builds:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            console.print_json(data=[_build_to_dict(b) for b in builds])
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                color = STATUS_COLORS.get(b.status, "white")
                console.print(f"  [{color}]Build #{b.id}[/{color}]")
                console.print(f"    Pipeline: {b.pipeline_name}")
                console.print(f"    Status: {b.status}")
                console.print(f"    Image: {b.image_tag or 'N/A'}")
                requested = b.requested_at.isoformat() if b.requested_at else "N/A"
                console.print(f"    Requested: {requested}")
                if b.error_message:
                    console.print(f"    Error: {b.error_message}", markup=False)
                console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a build record and the files it verified."""
    from collab_imagegen.builds.service import BuildNotFoundError, get_build
    from collab_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            b = get_build(session, build_id)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            data = _build_to_dict(b)
            data["artifacts"] = [_artifact_to_dict(a) for a in b.artifacts]
            console.print_json(data=data)
            return

        color = STATUS_COLORS.get(b.status, "white")
        console.print(f"[bold]Build #{b.id}[/bold] [{color}]{b.status}[/{color}]")
        console.print()
        console.print(f"  Pipeline:       {b.pipeline_name}")
        console.print(f"  Image:          {b.image_tag or 'N/A'}")
        console.print(f"  Image ID:       {b.image_id or 'N/A'}")
        console.print(f"  Panic policy:   {b.panic_policy}")
        console.print(f"  Build id:       {b.build_identifier or '(none)'}")
        console.print(f"  Cache key:      {b.cache_key or 'N/A'}")
        if b.duration_seconds is not None:
            console.print(f"  Duration:       {b.duration_seconds:.1f}s")
        console.print(f"  Log:            {b.log_path or 'N/A'}")
        if b.failed_state:
            console.print(f"  Failed state:   {b.failed_state}")
        if b.error_message:
            console.print(f"  Error:          {b.error_message}", markup=False)
        if b.artifacts:
            console.print()
            console.print("[bold]Artifacts:[/bold]")
            for a in b.artifacts:
                console.print(f"  {a.path}  {a.size_bytes:,} bytes", markup=False)


if __name__ == "__main__":
    app()
