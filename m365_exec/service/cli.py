"""
Command-line interface for the M365 Code Execution Service.

Module: m365_exec/service/cli.py
"""

import json
import sys
from pathlib import Path
from typing import Optional

import anyio
import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

load_dotenv(override=False)

from .builtin_skills import load_builtin_skills
from .config import settings
from .models import SkillCategory, SkillFilters
from .skill_store import SkillStore, SkillStoreError
from .validator import validate_code

console = Console()


@click.group()
@click.option(
    "--skills-dir",
    default=None,
    help="Skills directory (defaults to M365_EXEC_SKILLS_DIRECTORY or ./data/skills)",
)
@click.pass_context
def cli(ctx: click.Context, skills_dir: Optional[str]) -> None:
    """M365 Code Execution - run scripts and manage reusable skills."""
    ctx.ensure_object(dict)
    ctx.obj["skills_dir"] = skills_dir or settings.skills_directory


@cli.command()
@click.option("--host", default=None, help="Bind host")
@click.option("--port", default=None, type=int, help="Bind port")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP service."""
    import uvicorn

    uvicorn.run(
        "m365_exec.service.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload or settings.debug,
        log_level=settings.log_level.lower(),
    )


@cli.group(name="skills")
def skills_cmd() -> None:
    """Manage saved skills."""
    pass


@skills_cmd.command(name="list")
@click.option(
    "--category",
    type=click.Choice([c.value for c in SkillCategory], case_sensitive=False),
    default=None,
    help="Only show skills in this category",
)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def list_cmd(ctx: click.Context, category: Optional[str], as_json: bool) -> None:
    """List saved skills, most used first."""
    store = SkillStore(ctx.obj["skills_dir"])
    filters = SkillFilters(category=SkillCategory(category.lower()) if category else None)

    try:
        skills = anyio.run(store.list, filters)
    except SkillStoreError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([skill.summary() for skill in skills], indent=2))
        return

    if not skills:
        console.print("[yellow]No skills found[/yellow]")
        return

    table = Table(title=f"Skills ({len(skills)})")
    table.add_column("Name", style="cyan")
    table.add_column("Category", style="magenta")
    table.add_column("Uses", justify="right")
    table.add_column("Built-in", justify="center")
    table.add_column("Description")

    for skill in skills:
        table.add_row(
            skill.name,
            skill.category.value,
            str(skill.usage_count),
            "✓" if skill.is_builtin else "",
            skill.description,
        )

    console.print(table)


@skills_cmd.command(name="seed")
@click.pass_context
def seed_cmd(ctx: click.Context) -> None:
    """Install the built-in skills that are not present yet."""
    store = SkillStore(ctx.obj["skills_dir"])
    loaded = anyio.run(load_builtin_skills, store)
    if loaded:
        console.print(f"[green]✓ Loaded {loaded} built-in skills[/green]")
    else:
        console.print("[dim]Built-in skills already present[/dim]")


@cli.command(name="validate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_cmd(file: Path) -> None:
    """Check a script file against the forbidden-pattern list."""
    result = validate_code(file.read_text(encoding="utf-8"))
    if result.valid:
        console.print(f"[green]✓ {file} passed validation[/green]")
        return

    console.print(f"[red]✗ {file} failed validation[/red]")
    for error in result.errors:
        console.print(f"  • {error}")
    sys.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
