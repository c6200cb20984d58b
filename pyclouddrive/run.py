import logging
from pathlib import Path

import typer

from pyclouddrive.cloud import CloudDrive
from pyclouddrive.errors import CloudDriveError
from pyclouddrive.models import FileSpan, Node

app = typer.Typer()


def _drive(ctx: typer.Context) -> CloudDrive:
    return ctx.obj["drive"]


def _print_node(node: Node) -> None:
    kind = "d" if node.is_folder else "f"
    print(f"[{kind}] {node.id}  {node.name}")


@app.callback()
def main(
    ctx: typer.Context,
    config: str = "",
    verbose: bool = False,
):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    ctx.ensure_object(dict)
    drive = CloudDrive.from_config(config or None)
    ctx.call_on_close(drive.close)
    try:
        drive.connect()
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    ctx.obj["drive"] = drive


@app.command()
def ls(ctx: typer.Context, node_id: str = typer.Argument("")):
    drive = _drive(ctx)
    try:
        parent_id = node_id or drive.lookup_root().id
        for node in drive.node_children(parent_id):
            _print_node(node)
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e


@app.command()
def mkdir(ctx: typer.Context, name: str, parent: str = ""):
    drive = _drive(ctx)
    try:
        parent_id = parent or drive.lookup_root().id
        _print_node(drive.create_folder(parent_id, name))
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e


@app.command()
def rm(ctx: typer.Context, node_id: str):
    try:
        _print_node(_drive(ctx).delete_node(node_id))
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e


@app.command()
def mv(ctx: typer.Context, node_id: str, from_parent: str, to_parent: str):
    try:
        _print_node(_drive(ctx).move_node(node_id, from_parent, to_parent))
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e


@app.command()
def rename(ctx: typer.Context, node_id: str, name: str):
    try:
        _print_node(_drive(ctx).rename_node(node_id, name))
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e


@app.command()
def put(ctx: typer.Context, path: Path, parent: str = "", name: str = ""):
    drive = _drive(ctx)
    try:
        parent_id = parent or drive.lookup_root().id
        _print_node(drive.upload_file(path, parent_id, name or None))
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e


@app.command()
def get(
    ctx: typer.Context,
    node_id: str,
    dest: Path,
    start: int | None = None,
    end: int | None = None,
):
    span = None
    if start is not None and end is not None:
        span = FileSpan(start=start, end=end)

    try:
        with _drive(ctx).download_node(node_id, span) as content, dest.open("wb") as f:
            for chunk in content.iter_bytes():
                f.write(chunk)
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e

    print(f"Downloaded {node_id} to {dest}")


@app.command()
def quota(ctx: typer.Context):
    try:
        q = _drive(ctx).quota()
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    print(f"quota={q.quota} available={q.available} last_calculated={q.last_calculated}")


@app.command()
def changes(ctx: typer.Context, checkpoint: str = typer.Argument("")):
    try:
        batch = _drive(ctx).changes(checkpoint)
    except CloudDriveError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    for node in batch.nodes:
        _print_node(node)
    print(f"checkpoint={batch.checkpoint} reset={batch.reset}")


if __name__ == "__main__":
    app()
