"""skillkeeper CLI - package, install, update and remove skills safely."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from skillkeeper.cancellation import CancellationToken, install_signal_handlers
from skillkeeper.errors import ExitCode, SecurityViolation, SkillKeeperError, exit_code_for

app = typer.Typer(
    name="skillkeeper",
    help="Package, install, update and uninstall Agent Skills without leaving a mess behind.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

SCOPE_HELP = "Install scope: 'project' (./.claude/skills), 'personal' (~/.claude/skills) or a directory"


@dataclass
class CliState:
    """Presentation options shared by every command."""

    verbose: bool = False
    quiet: bool = False


def _configure_logging(verbose: bool, quiet: bool) -> None:
    from skillkeeper.config import ConfigError, get_config

    try:
        level_name = get_config().log_level.value.upper()
    except ConfigError as e:
        err_console.print(f"[yellow]Warning:[/yellow] {e}")
        level_name = "INFO"

    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = max(getattr(logging, level_name, logging.INFO), logging.WARNING)

    package_logger = logging.getLogger("skillkeeper")
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)

    handler = RichHandler(console=err_console, show_time=False, show_path=False)
    handler.setLevel(level)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show errors"),
) -> None:
    """Package, install, update and uninstall Agent Skills."""
    ctx.obj = CliState(verbose=verbose, quiet=quiet)
    _configure_logging(verbose, quiet)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


def _confirm_callback(yes: bool) -> Optional[Callable[[str], bool]]:
    if yes:
        return None
    return lambda message: typer.confirm(message, default=False)


def _print_error(error: SkillKeeperError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    if isinstance(error, SecurityViolation):
        console.print(f"  [dim]Reason: {error.reason.value}[/dim]")


def _exit_for(outcome, token: CancellationToken) -> None:
    code = exit_code_for(outcome)
    if code == ExitCode.CANCELLED and token.exit_code is not None:
        raise typer.Exit(code=token.exit_code)
    if code != ExitCode.SUCCESS:
        raise typer.Exit(code=int(code))


# =============================================================================
# Authoring
# =============================================================================


@app.command()
def new(
    name: str = typer.Argument(..., help="Name for the skill (lowercase, hyphens)"),
    description: str = typer.Option(
        "",
        "--description",
        "-d",
        help="Description of what the skill does and when to use it",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--out",
        "-o",
        help="Parent directory for the skill (default: ./.claude/skills)",
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing skill"),
) -> None:
    """Create a new skill with a SKILL.md template.

    Example:

    \b
        skillkeeper new pdf-processor -d "Extract text from PDF files"
        skillkeeper new code-reviewer -o ./skills
    """
    from skillkeeper.scaffold import create_skill_scaffold

    try:
        skill_dir = create_skill_scaffold(name, output_dir, description=description, force=force)
    except FileExistsError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(code=1)
    except SkillKeeperError as e:
        _print_error(e)
        raise typer.Exit(code=int(ExitCode.INVALID_PACKAGE))

    console.print(f"[green]✓ Created skill:[/green] {skill_dir}")
    console.print()
    console.print("[bold]Next steps:[/bold]")
    console.print(f"  1. Edit [cyan]{skill_dir}/SKILL.md[/cyan] with your instructions")
    console.print(f"  2. Validate with: [cyan]skillkeeper validate {skill_dir}[/cyan]")
    console.print(f"  3. Package with: [cyan]skillkeeper package {skill_dir}[/cyan]")


@app.command()
def validate(
    skill_path: Path = typer.Argument(..., help="Path to the skill directory"),
    strict: bool = typer.Option(False, "--strict", help="Treat warnings as errors"),
) -> None:
    """Validate a skill directory.

    Example:

    \b
        skillkeeper validate ./skills/my-skill
        skillkeeper validate ./skills/my-skill --strict
    """
    from skillkeeper.validator import validate_skill_directory

    result = validate_skill_directory(Path(skill_path))

    if result.skill_name:
        console.print(f"[bold]Skill:[/bold] {result.skill_name}")

    if result.errors:
        console.print("[red bold]Errors:[/red bold]")
        for msg in result.errors:
            console.print(f"  [red]✗[/red] {msg}")

    if result.warnings:
        console.print("[yellow bold]Warnings:[/yellow bold]")
        for msg in result.warnings:
            console.print(f"  [yellow]![/yellow] {msg}")

    if result.valid and not (strict and result.warnings):
        console.print("[green]✓ Skill is valid[/green]")
        return

    if strict and result.warnings and result.valid:
        console.print("[red]✗ Validation failed (warnings in strict mode)[/red]")
    else:
        console.print("[red]✗ Validation failed[/red]")
    raise typer.Exit(code=int(ExitCode.INVALID_PACKAGE))


@app.command()
def package(
    skill_path: Path = typer.Argument(..., help="Path to the skill directory"),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--out",
        "-o",
        help="Directory for the .skill file (default: current directory)",
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing package"),
) -> None:
    """Package a skill directory into a .skill file.

    Example:

    \b
        skillkeeper package ./skills/my-skill
        skillkeeper package ./skills/my-skill -o dist
    """
    from skillkeeper.archive import format_file_size
    from skillkeeper.errors import exit_code_for_error
    from skillkeeper.packager import package_skill

    try:
        result = package_skill(skill_path, output_dir, force=force)
    except SkillKeeperError as e:
        _print_error(e)
        raise typer.Exit(code=int(exit_code_for_error(e)))

    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")
    console.print(f"[green]✓ Package created:[/green] {result.package_path}")
    console.print(f"  Files: {result.file_count}")
    console.print(f"  Size: {format_file_size(result.size)}")


# =============================================================================
# Lifecycle
# =============================================================================


@app.command()
def install(
    ctx: typer.Context,
    package_path: Path = typer.Argument(..., help="Path to the .skill package"),
    scope: str = typer.Option("project", "--scope", "-s", help=SCOPE_HELP),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing skill and bypass size limits"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be installed"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Install a skill package.

    Example:

    \b
        skillkeeper install my-skill.skill
        skillkeeper install my-skill.skill --scope personal
        skillkeeper install my-skill.skill --force
    """
    from skillkeeper.archive import format_file_size
    from skillkeeper.comparator import format_diff_line, summarize_changes
    from skillkeeper.installer import (
        InstallCancelled,
        InstallDryRunPreview,
        InstallFailed,
        InstallOverwriteRequired,
        InstallSuccess,
        install_skill,
    )

    state = _state(ctx)
    token = CancellationToken()
    restore = install_signal_handlers(token)
    try:
        outcome = install_skill(
            package_path,
            scope=scope,
            force=force,
            dry_run=dry_run,
            confirm=_confirm_callback(yes),
            token=token,
        )
    finally:
        restore()

    if isinstance(outcome, InstallSuccess):
        verb = "Reinstalled" if outcome.was_overwritten else "Installed"
        console.print(f"[green]✓ {verb}:[/green] {outcome.skill_name}")
        if not state.quiet:
            console.print(f"  [dim]Location: {outcome.skill_path}[/dim]")
            console.print(f"  [dim]{outcome.file_count} files, {format_file_size(outcome.size)}[/dim]")
            for warning in outcome.warnings:
                console.print(f"  [yellow]![/yellow] {warning}")
    elif isinstance(outcome, InstallDryRunPreview):
        console.print(f"[bold]Dry run:[/bold] would install {outcome.skill_name} to {outcome.skill_path}")
        console.print(f"  {outcome.file_count} files, {format_file_size(outcome.size)}")
        if outcome.would_overwrite:
            console.print("  [yellow]The existing skill would be replaced[/yellow]")
    elif isinstance(outcome, InstallOverwriteRequired):
        console.print(
            f"[yellow]Warning:[/yellow] Skill '{outcome.skill_name}' is already installed at "
            f"{outcome.skill_path}"
        )
        if outcome.comparison is not None:
            console.print(f"  [dim]{summarize_changes(outcome.comparison)}[/dim]")
            if state.verbose:
                changes = (
                    outcome.comparison.files_added
                    + outcome.comparison.files_removed
                    + outcome.comparison.files_modified
                )
                for change in changes:
                    console.print(f"    {format_diff_line(change)}")
        console.print("[dim]Use --force to overwrite, or 'skillkeeper update' to update it[/dim]")
    elif isinstance(outcome, InstallFailed):
        _print_error(outcome.error)
    elif isinstance(outcome, InstallCancelled):
        console.print(f"[yellow]Cancelled:[/yellow] {outcome.reason}")

    _exit_for(outcome, token)


@app.command()
def update(
    ctx: typer.Context,
    skill_name: str = typer.Argument(..., help="Name of the installed skill"),
    package_path: Path = typer.Argument(..., help="Path to the new .skill package"),
    scope: str = typer.Option("project", "--scope", "-s", help=SCOPE_HELP),
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip confirmation and bypass hard-link and size checks"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the changes without applying them"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Do not write a backup"),
    keep_backup: bool = typer.Option(False, "--keep-backup", help="Keep the backup after success"),
    thorough: bool = typer.Option(False, "--thorough", help="Compare file contents, not just sizes"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Update an installed skill from a package.

    The installed skill is backed up, replaced, and verified. If anything
    goes wrong the previous version is restored.

    Example:

    \b
        skillkeeper update my-skill my-skill.skill
        skillkeeper update my-skill my-skill.skill --dry-run
        skillkeeper update my-skill my-skill.skill --keep-backup
    """
    from skillkeeper.archive import format_file_size
    from skillkeeper.comparator import format_diff_line, summarize_changes
    from skillkeeper.updater import (
        UpdateCancelled,
        UpdateDryRunPreview,
        UpdateFailed,
        UpdateRollbackFailed,
        UpdateRolledBack,
        UpdateSuccess,
        update_skill,
    )

    state = _state(ctx)
    token = CancellationToken()
    restore = install_signal_handlers(token)
    try:
        outcome = update_skill(
            skill_name,
            package_path,
            scope=scope,
            force=force,
            dry_run=dry_run,
            no_backup=no_backup,
            keep_backup=keep_backup,
            thorough=thorough,
            confirm=_confirm_callback(yes),
            token=token,
        )
    finally:
        restore()

    if isinstance(outcome, UpdateSuccess):
        console.print(f"[green]✓ Updated:[/green] {outcome.skill_name}")
        if not state.quiet:
            console.print(
                f"  [dim]{outcome.previous_file_count} -> {outcome.current_file_count} files, "
                f"{format_file_size(outcome.previous_size)} -> "
                f"{format_file_size(outcome.current_size)}[/dim]"
            )
            if outcome.backup_path and not outcome.backup_removed:
                console.print(f"  [dim]Backup: {outcome.backup_path}[/dim]")
            for warning in outcome.warnings:
                console.print(f"  [yellow]![/yellow] {warning}")
    elif isinstance(outcome, UpdateDryRunPreview):
        comparison = outcome.comparison
        console.print(f"[bold]Dry run:[/bold] {outcome.skill_name} ({summarize_changes(comparison)})")
        for change in comparison.files_added + comparison.files_removed + comparison.files_modified:
            console.print(f"  {format_diff_line(change)}")
        if outcome.backup_path:
            console.print(f"  [dim]Backup would be written to {outcome.backup_path}[/dim]")
        for warning in outcome.warnings:
            console.print(f"  [yellow]![/yellow] {warning}")
    elif isinstance(outcome, UpdateRolledBack):
        console.print(f"[yellow]Rolled back:[/yellow] {outcome.failure_reason}")
        console.print(f"  [dim]{outcome.skill_name} was restored to its previous version[/dim]")
        if outcome.backup_path:
            console.print(f"  [dim]Backup: {outcome.backup_path}[/dim]")
    elif isinstance(outcome, UpdateRollbackFailed):
        console.print("[red bold]CRITICAL: update failed and rollback failed[/red bold]")
        console.print(f"  Update error: {outcome.update_failure_reason}")
        console.print(f"  Rollback error: {outcome.rollback_failure_reason}")
        if outcome.backup_path:
            console.print(f"  Backup: {outcome.backup_path}")
        console.print("[bold]Manual recovery:[/bold]")
        for step, instruction in enumerate(outcome.recovery_instructions, 1):
            console.print(f"  {step}. {instruction}")
    elif isinstance(outcome, UpdateFailed):
        _print_error(outcome.error)
        if state.verbose:
            console.print(f"  [dim]Phase: {outcome.phase.value}[/dim]")
    elif isinstance(outcome, UpdateCancelled):
        console.print(f"[yellow]Cancelled:[/yellow] {outcome.reason}")

    _exit_for(outcome, token)


@app.command()
def uninstall(
    ctx: typer.Context,
    skill_names: list[str] = typer.Argument(..., help="Names of the skills to remove"),
    scope: str = typer.Option("project", "--scope", "-s", help=SCOPE_HELP),
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip confirmation and bypass safety checks"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="List the files that would be removed"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Uninstall one or more skills.

    Example:

    \b
        skillkeeper uninstall my-skill
        skillkeeper uninstall skill-a skill-b --scope personal --yes
    """
    from skillkeeper.archive import format_file_size
    from skillkeeper.uninstaller import (
        UninstallCancelled,
        UninstallDryRunPreview,
        UninstallFailed,
        UninstallPartial,
        UninstallSuccess,
        uninstall_skills,
    )

    state = _state(ctx)
    token = CancellationToken()
    restore = install_signal_handlers(token)
    try:
        result = uninstall_skills(
            skill_names,
            token=token,
            scope=scope,
            force=force,
            dry_run=dry_run,
            confirm=_confirm_callback(yes),
        )
    finally:
        restore()

    for name, outcome in result.outcomes.items():
        if isinstance(outcome, UninstallSuccess):
            console.print(f"[green]✓ Uninstalled:[/green] {name}")
            if not state.quiet:
                console.print(
                    f"  [dim]{outcome.summary.files_deleted} files, "
                    f"{format_file_size(outcome.summary.bytes_freed)} freed[/dim]"
                )
        elif isinstance(outcome, UninstallDryRunPreview):
            console.print(f"[bold]Dry run:[/bold] would remove {outcome.skill_path}")
            for path in outcome.files:
                console.print(f"  - {path}")
            for warning in outcome.warnings:
                console.print(f"  [yellow]![/yellow] {warning}")
        elif isinstance(outcome, UninstallPartial):
            console.print(
                f"[yellow]Partially removed:[/yellow] {name} "
                f"({outcome.files_remaining} file(s) remain)"
            )
            for message in outcome.summary.error_messages:
                console.print(f"  [red]✗[/red] {message}")
            if outcome.last_error and outcome.last_error not in outcome.summary.error_messages:
                console.print(f"  [dim]{outcome.last_error}[/dim]")
        elif isinstance(outcome, UninstallFailed):
            _print_error(outcome.error)
        elif isinstance(outcome, UninstallCancelled):
            console.print(f"[yellow]Cancelled:[/yellow] {name} ({outcome.reason})")

    if len(result.outcomes) > 1 and not dry_run:
        console.print()
        console.print(
            f"[bold]Removed {len(result.succeeded)} of {len(result.outcomes)} skill(s)[/bold] "
            f"[dim]({format_file_size(result.bytes_freed)} freed)[/dim]"
        )

    _exit_for(result, token)


# =============================================================================
# Inspection
# =============================================================================


@app.command("list")
def list_skills(
    scope: Optional[str] = typer.Option(
        None, "--scope", "-s", help="Only this scope (default: project and personal)"
    ),
    paths: bool = typer.Option(False, "--paths", help="Show full installation paths"),
) -> None:
    """List installed skills.

    Example:

    \b
        skillkeeper list
        skillkeeper list --scope personal --paths
    """
    from skillkeeper.installed import list_installed_skills

    try:
        skills = list_installed_skills(scope=scope)
    except SkillKeeperError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    if not skills:
        console.print("[yellow]No skills installed[/yellow]")
        return

    table = Table(title="Installed Skills", show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Scope")
    table.add_column("Version")
    if paths:
        table.add_column("Path", style="dim")
    else:
        table.add_column("Description")

    for skill in skills:
        if paths:
            detail = str(skill.path)
        else:
            detail = skill.description[:40] + "..." if len(skill.description) > 40 else skill.description
        table.add_row(skill.name, skill.scope, skill.version or "-", detail)

    console.print(table)


@app.command()
def discover(
    root: Path = typer.Argument(Path("."), help="Directory to search below"),
    depth: Optional[int] = typer.Option(
        None, "--depth", "-d", help="Maximum directory depth (default from config)"
    ),
    no_gitignore: bool = typer.Option(False, "--no-gitignore", help="Do not apply .gitignore rules"),
) -> None:
    """Find nested .claude/skills directories, e.g. in a monorepo.

    Example:

    \b
        skillkeeper discover
        skillkeeper discover ./packages --depth 5
    """
    from skillkeeper.config import get_config
    from skillkeeper.installed import list_nested_skills

    max_depth = depth if depth is not None else get_config().discovery_max_depth
    skills, depth_limit_reached = list_nested_skills(
        root, max_depth=max_depth, respect_gitignore=not no_gitignore
    )

    if not skills:
        console.print("[yellow]No nested skills found[/yellow]")
    else:
        table = Table(title="Discovered Skills", show_header=True, header_style="bold")
        table.add_column("Location")
        table.add_column("Name", style="cyan")
        table.add_column("Description")
        for skill in skills:
            table.add_row(skill.scope, skill.name, skill.description[:50])
        console.print(table)

    if depth_limit_reached:
        console.print(
            f"[yellow]![/yellow] Stopped at depth {max_depth}; deeper skills may exist "
            "(use --depth to search further)"
        )


@app.command()
def backups(
    skill_name: Optional[str] = typer.Argument(None, help="Only backups of this skill"),
) -> None:
    """List update backups, newest first.

    Example:

    \b
        skillkeeper backups
        skillkeeper backups my-skill
    """
    from skillkeeper.archive import format_file_size
    from skillkeeper.backup import get_backup_dir, list_backups

    found = list_backups(skill_name=skill_name)
    if not found:
        console.print("[yellow]No backups found[/yellow]")
        console.print(f"[dim]Backup directory: {get_backup_dir()}[/dim]")
        return

    table = Table(title="Backups", show_header=True, header_style="bold")
    table.add_column("Skill", style="cyan")
    table.add_column("Created")
    table.add_column("Size", justify="right")
    table.add_column("Path", style="dim")
    for info in found:
        table.add_row(
            info.skill_name,
            info.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            format_file_size(info.size),
            str(info.path),
        )
    console.print(table)


if __name__ == "__main__":
    app()
