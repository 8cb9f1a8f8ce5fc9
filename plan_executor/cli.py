from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import yaml
from rich import print
from rich.table import Table

from .config import CommitConfig, Config, load_commit_config
from .errors import ConfigError, PlanLoadError
from .executor import StepExecutor
from .plan import PlanStore
from .prompt import StaticPrompter, TyperPrompter
from .scoring import autofix_plan, score_emoji, summarize_plan
from .util import setup_logging, write_manifest

app = typer.Typer(help="Plan Executor CLI")


@app.callback()
def main(
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
        case_sensitive=False,
    ),
) -> None:
    setup_logging(log_level)


def _load_plan_or_exit(plan: Path):
    try:
        return PlanStore(plan).load()
    except PlanLoadError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


def _print_steps(plan) -> None:
    table = Table(title="Steps")
    table.add_column("id")
    table.add_column("type")
    table.add_column("status")
    table.add_column("score")
    for step in plan.steps:
        emoji, color = score_emoji(step.rlhf_score)
        score = "-" if step.rlhf_score is None else f"{emoji} {step.rlhf_score:+d}"
        table.add_row(step.id, step.type, step.status.value, f"[{color}]{score}[/{color}]")
    print(table)


@app.command("run")
def cli_run(
    plan: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan YAML file"),
    repo: Path = typer.Option(Path("."), "--repo", file_okay=False, help="Target git repository"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Commit configuration YAML"),
    non_interactive: bool = typer.Option(
        False, "--non-interactive", help="Never prompt; warn and wait on a dirty tree instead"
    ),
) -> None:
    config = Config()
    commit_config = load_commit_config(config_path or repo / config.commit_config_path)
    if non_interactive:
        commit_config = commit_config.with_overrides(interactive_safety=False)
    executor = StepExecutor(
        plan,
        repo=repo,
        commit_config=commit_config,
        config=config,
        prompter=StaticPrompter(confirm_answer=False) if non_interactive else TyperPrompter(),
    )
    try:
        report = executor.run()
    except PlanLoadError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    summary = report.to_dict()
    manifest_path = write_manifest("run", {"plan": str(plan), **summary}, out_dir=config.runs_dir)
    color = {"SUCCESS": "green", "INTERRUPTED": "yellow"}.get(report.status, "red")
    print(
        f"[{color}]{report.status}[/{color}] "
        f"{report.succeeded} succeeded, {report.skipped} skipped, "
        f"{1 if report.failed_step else 0} failed of {report.total} steps; "
        f"average score {report.average_score:.2f}"
    )
    if report.failed_step:
        print(f"[red]Step '{report.failed_step}' failed: {report.error}[/red]")
    elif report.error:
        print(f"[yellow]{report.error}[/yellow]")
    if report.commit_hashes:
        print(f"Commits: {', '.join(report.commit_hashes)}")
    print(f"Run summary written to {manifest_path}")
    raise typer.Exit(code=report.exit_code)


@app.command("autofix")
def cli_autofix(
    plan: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan YAML file"),
    out: Optional[Path] = typer.Option(None, "--out", help="Where to write the fixed plan"),
) -> None:
    loaded = _load_plan_or_exit(plan)
    report = autofix_plan(loaded)
    for line in report.log:
        color = "green" if line.startswith("FIXED") else "red"
        print(f"[{color}]{line}[/{color}]")
    if not report.fixed:
        print("[yellow]No automatic fixes available; manual intervention may be required.[/yellow]")
        raise typer.Exit(code=1 if report.manual else 0)
    target = out or plan.with_name(f"{plan.stem}-fixed{plan.suffix or '.yaml'}")
    PlanStore(target).save(report.plan)
    write_manifest(
        "autofix",
        {
            "plan": str(plan),
            "fixed_plan": str(target),
            "fixed": report.fixed,
            "manual": report.manual,
            "log": report.log,
        },
        out_dir=Config().runs_dir,
    )
    print(f"[green]{len(report.fixed)} step(s) fixed[/green], saved to {target}")


@app.command("report")
def cli_report(
    plan: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan YAML file"),
) -> None:
    loaded = _load_plan_or_exit(plan)
    _print_steps(loaded)
    summary = summarize_plan(loaded)
    scores = summary["scores"]
    print(
        f"Total {summary['total']}: "
        + ", ".join(f"{status} {count}" for status, count in summary["statuses"].items())
    )
    print(f"Average score {scores['average']:.2f} over {scores['total']} scored step(s)")
    for error_type, count in summary["failures"].items():
        print(f"[red]{error_type}: {count}[/red]")
    if loaded.evaluation and loaded.evaluation.final_status:
        print(f"Final status: {loaded.evaluation.final_status}")


@app.command("check-config")
def cli_check_config(
    path: Optional[Path] = typer.Argument(None, help="Commit configuration YAML"),
) -> None:
    target = path or Path(Config().commit_config_path)
    if not target.exists():
        print(f"[yellow]{target} not found; defaults apply[/yellow]")
        return
    try:
        payload = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
        config = CommitConfig.from_dict(payload)
    except yaml.YAMLError as exc:
        print(f"[red]Could not parse {target}: {exc}[/red]")
        raise typer.Exit(code=1)
    except ConfigError as exc:
        print(f"[red]{target} is invalid:[/red]")
        for error in exc.errors:
            print(f"  - {error}")
        raise typer.Exit(code=1)
    print(f"[green]{target} is valid[/green]")
    print(
        f"commits {'enabled' if config.enabled else 'disabled'}, "
        f"lint={config.quality_checks.lint} ({config.quality_checks.lint_command}), "
        f"test={config.quality_checks.test} ({config.quality_checks.test_command})"
    )
