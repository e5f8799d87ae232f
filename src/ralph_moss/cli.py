"""ralph-moss CLI — run the stories of a prd.json in dependency order.

Installed as the ``ralph-moss`` console_script.
"""

from __future__ import annotations

from pathlib import Path

import click

from ralph_moss import __version__
from ralph_moss.config import Config
from ralph_moss.tasks.model import TaskStore

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


@click.group(invoke_without_command=True, context_settings=CONTEXT_SETTINGS)
@click.option("--prd", "prd_file", default="prd.json", help="Task store file")
@click.option("--claude", "use_claude", is_flag=True, help="Use Claude Code (default)")
@click.option("--agent-cmd", default="", help="Custom agent command; receives the prompt on stdin")
@click.option("--max-parallel", type=int, default=3, help="Max stories per round")
@click.option("--isolation/--no-isolation", default=True, help="Give every story its own git worktree")
@click.option("--keep-worktrees", is_flag=True, help="Leave worktrees on disk after each round")
@click.option("--max-iterations", type=int, default=50, help="Stop after N rounds (0=unlimited)")
@click.option("--max-cost", type=float, default=0.0, help="Stop once spend exceeds USD (0=unlimited)")
@click.option("--max-duration", type=int, default=0, help="Stop after N seconds (0=unlimited)")
@click.option("--worker-timeout", type=int, default=1800, help="Seconds before an agent is killed")
@click.option("--max-retries", type=int, default=3, help="Failed attempts before a story is blocked (0=never)")
@click.option("--quality-gate", default="", help="Command run in the workspace after each agent")
@click.option("--review", is_flag=True, help="Run a review agent after each story")
@click.option("--create-pr", is_flag=True, help="Open a PR when every story passes (requires gh)")
@click.option("--draft-pr", is_flag=True, help="Create the PR as a draft")
@click.option("--no-cost", is_flag=True, help="Do not write the cost log")
@click.option("--dry-run", is_flag=True, help="Show the planned rounds without executing")
@click.option("--skip-preflight", is_flag=True, help="Do not check the store for stale file references")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="ralph-moss")
@click.pass_context
def main(
    ctx: click.Context,
    prd_file: str,
    use_claude: bool,
    agent_cmd: str,
    max_parallel: int,
    isolation: bool,
    keep_worktrees: bool,
    max_iterations: int,
    max_cost: float,
    max_duration: int,
    worker_timeout: int,
    max_retries: int,
    quality_gate: str,
    review: bool,
    create_pr: bool,
    draft_pr: bool,
    no_cost: bool,
    dry_run: bool,
    skip_preflight: bool,
    verbose: bool,
) -> None:
    """Ralph Moss — dependency-aware parallel story runner.

    Reads prd.json, runs every story whose dependencies pass in its own
    worktree, and merges finished stories into the integration branch
    round by round.

    \b
    EXIT CODES:
      0    all stories pass (or are blocked)
      2    budget exceeded (rounds, cost or time)
      3    stuck: stories remain but none can run
      4    invalid task store (or failed preflight)
      130  interrupted
    """
    from ralph_moss import log

    log.set_verbose(verbose)

    if ctx.invoked_subcommand is not None:
        return

    if use_claude and agent_cmd:
        raise click.UsageError("Use either --claude or --agent-cmd, not both.")

    cfg = Config(
        prd_file=prd_file,
        ai_engine="claude",
        agent_cmd=agent_cmd if not use_claude else "",
        max_parallel=max_parallel,
        isolation=isolation,
        keep_worktrees=keep_worktrees,
        max_iterations=max_iterations,
        max_cost=max_cost,
        max_duration=max_duration,
        worker_timeout=worker_timeout,
        max_retries=max_retries,
        quality_gate=quality_gate,
        review=review,
        create_pr=create_pr or draft_pr,
        draft_pr=draft_pr,
        track_costs=not no_cost,
        dry_run=dry_run,
        skip_preflight=skip_preflight,
        verbose=verbose,
    )
    if use_claude:
        cfg.ai_engine = "claude"
        cfg.agent_cmd = ""

    ctx.exit(_run_pipeline(cfg))


# ── Subcommand: status ───────────────────────────────────────────


@main.command()
@click.option("--prd", "prd_file", default=None, help="Task store file")
@click.pass_context
def status(ctx: click.Context, prd_file: str | None) -> None:
    """Show the story dependency graph and what can run now."""
    from rich.markup import escape

    from ralph_moss import log
    from ralph_moss.errors import ValidationError
    from ralph_moss.resolver import explain_block, ready
    from ralph_moss.tasks.io import load_store

    parent_params = ctx.parent.params if ctx.parent else {}
    path = Path(prd_file or parent_params.get("prd_file") or "prd.json")
    try:
        store = load_store(path)
    except ValidationError as e:
        _report_validation(e)
        ctx.exit(4)

    runnable = set(ready(store))
    log.console.print("")
    log.console.print("[bold]Story Dependency Graph:[/bold]")
    log.console.print("========================")
    for story in store.stories:
        if story.passes:
            icon = "✅"
        elif story.blocked:
            icon = "⛔"
        elif story.id in runnable:
            icon = "▶️ "
        else:
            icon = "⏳"
        if story.depends_on:
            deps = f"depends on: {', '.join(story.depends_on)}"
        else:
            deps = "no dependencies - can run immediately"
        line = escape(f"{icon} {story.id}: {story.title} ({deps})")
        if story.remaining and story.id not in runnable:
            line += f" [dim]{escape(explain_block(store, story.id))}[/dim]"
        log.console.print(line)
    log.console.print("")
    log.info(
        f"{len(store.passed_ids())} passed, {len(runnable)} ready, "
        f"{len(store.remaining_ids())} remaining, {len(store.blocked_ids())} blocked"
    )


# ── Subcommand: merge ────────────────────────────────────────────


@main.command()
@click.option("--branches", default="", help="Comma-separated branches (default: all ralph-moss/* branches)")
@click.option("--target", default="main", help="Branch to merge into")
@click.option("--auto-resolve", is_flag=True, help="Let the agent resolve conflicts in code files")
@click.option("--dry-run", is_flag=True, help="Show what would be merged without merging")
@click.pass_context
def merge(ctx: click.Context, branches: str, target: str, auto_resolve: bool, dry_run: bool) -> None:
    """Merge story branches with the per-file conflict policy.

    \b
    prd.json, progress.txt, costs.log   take the story branch version
    lock files                          keep the target version
    everything else                     agent resolution (--auto-resolve),
                                        falling back to the story version
    """
    from ralph_moss import git_ops, log
    from ralph_moss.config import BRANCH_PREFIX, resolve_repo_root
    from ralph_moss.reconciler import EngineConflictResolver, Reconciler, merge_branches

    repo_dir = resolve_repo_root()
    if not git_ops.is_git_repo(cwd=repo_dir):
        log.error("Not a git repository")
        ctx.exit(1)

    if branches:
        names = [b.strip() for b in branches.split(",") if b.strip()]
    else:
        names = git_ops.list_branches(f"{BRANCH_PREFIX}/*", cwd=repo_dir)
        names = [b for b in names if b != target]
    if not names:
        log.warn("No branches to merge")
        return

    log.info(f"Target: {target}")
    log.info(f"Branches: {', '.join(names)}")

    if not dry_run:
        git_ops.ensure_clean_git_state(cwd=repo_dir)
        if git_ops.has_dirty_worktree(cwd=repo_dir):
            log.error("Working tree is dirty. Commit or stash changes before merging.")
            ctx.exit(1)
        if not git_ops.checkout(target, cwd=repo_dir):
            log.error(f"Cannot checkout {target}")
            ctx.exit(1)

    resolver = None
    if auto_resolve:
        parent_params = ctx.parent.params if ctx.parent else {}
        engine = _build_engine(Config(agent_cmd=parent_params.get("agent_cmd", "")))
        if engine is None:
            ctx.exit(1)
        resolver = EngineConflictResolver(engine)

    reconciler = Reconciler(repo_dir, resolver=resolver, manual_escalation=not auto_resolve)
    results = merge_branches(reconciler, names, target, dry_run=dry_run)

    failed = [r for r in results if not r.ok]
    if failed:
        log.error(f"{len(failed)} branch(es) not merged: {', '.join(r.branch for r in failed)}")
        if not auto_resolve:
            log.console.print("[dim]Re-run with --auto-resolve to let the agent resolve code conflicts.[/dim]")
        ctx.exit(1)
    if not dry_run:
        log.success(f"Merged {len(results)} branch(es) into {target}")


# ── Pipeline ─────────────────────────────────────────────────────


def _report_validation(err: Exception) -> None:
    from rich.markup import escape

    from ralph_moss import log

    problems = getattr(err, "problems", None) or [str(err)]
    log.error("Invalid task store:")
    for problem in problems:
        log.console.print(f"  [red]•[/red] {escape(str(problem))}")


def _build_engine(cfg: Config):
    from ralph_moss import log
    from ralph_moss.engines.registry import get_engine

    name = "command" if cfg.agent_cmd else cfg.ai_engine
    engine = get_engine(name, command=cfg.agent_cmd)
    err = engine.check_available()
    if err:
        log.error(err)
        return None
    return engine


def _run_pipeline(cfg: Config) -> int:
    """Validate, prepare the repo, run rounds, report. Returns the exit code."""
    from rich.markup import escape

    from ralph_moss import git_ops, log
    from ralph_moss.budget import BudgetGuard
    from ralph_moss.config import COSTS_FILE, resolve_repo_root
    from ralph_moss.errors import ValidationError
    from ralph_moss.hooks import HookRunner
    from ralph_moss.reconciler import EngineConflictResolver, Reconciler
    from ralph_moss.report import TerminalReason
    from ralph_moss.retries import RetryTracker
    from ralph_moss.scheduler import BatchScheduler
    from ralph_moss.tasks.io import load_store
    from ralph_moss.tasks.validate import preflight, validate_or_raise
    from ralph_moss.worker import Worker
    from ralph_moss.workspace import WorkspaceProvisioner, prepare_repo

    store_path = cfg.prd_path
    try:
        store = load_store(store_path)
        validate_or_raise(store)
    except ValidationError as e:
        _report_validation(e)
        return TerminalReason.VALIDATION_ERROR.exit_code

    repo_dir = resolve_repo_root(store_path.parent).resolve()
    if not cfg.skip_preflight:
        errors, warnings = preflight(store, repo_dir, store_path.parent)
        for warning in warnings:
            log.warn(f"Preflight: {warning}")
        if errors:
            log.error("Preflight failed:")
            for problem in errors:
                log.console.print(f"  [red]•[/red] {escape(problem)}")
            log.info("Fix the store or pass --skip-preflight")
            return TerminalReason.VALIDATION_ERROR.exit_code

    if cfg.dry_run:
        _show_dry_run(cfg, store)
        return 0

    if not git_ops.is_git_repo(cwd=repo_dir):
        log.error(f"{store_path.parent} is not inside a git repository")
        return 1
    if not store_path.is_relative_to(repo_dir):
        log.error(f"{store_path} is outside the repository {repo_dir}")
        return 1

    engine = _build_engine(cfg)
    if engine is None:
        return 1

    base_branch = git_ops.current_branch(cwd=repo_dir)
    try:
        integration = git_ops.ensure_run_branch(store.branch_name, base_branch, cwd=repo_dir)
    except RuntimeError as e:
        log.error(str(e))
        return 1

    state_dir = cfg.state_dir
    prepare_repo(repo_dir, store_path, state_dir, isolated=cfg.isolation)

    _show_banner(cfg, store, integration)

    provisioner = WorkspaceProvisioner(
        repo_dir,
        integration,
        isolated=cfg.isolation,
        base_dir=Path(cfg.worktree_dir) if cfg.worktree_dir else None,
    )
    worker = Worker(
        engine,
        store_path.relative_to(repo_dir),
        integration_branch=integration,
        timeout=cfg.worker_timeout or None,
        min_output_chars=cfg.min_output_chars,
        log_dir=state_dir / "logs",
    )
    reconciler = Reconciler(
        repo_dir,
        store_rel=store_path.relative_to(repo_dir).as_posix(),
        resolver=EngineConflictResolver(engine),
    )
    guard = BudgetGuard(
        cfg.max_iterations,
        cfg.max_cost,
        cfg.max_duration,
        cost_log=state_dir / COSTS_FILE if cfg.track_costs else None,
    )
    hooks = HookRunner(
        state_dir,
        quality_gate=cfg.quality_gate,
        gate_timeout=cfg.quality_gate_timeout,
        review_engine=engine if cfg.review else None,
        integration_branch=integration,
    )
    scheduler = BatchScheduler(
        store_path,
        provisioner,
        worker,
        reconciler,
        guard,
        RetryTracker(state_dir / "retries.json", cfg.max_retries),
        max_parallel=cfg.max_parallel,
        keep_workspaces=cfg.keep_worktrees,
        hooks=hooks,
        report_path=state_dir / "run-report.json",
    )

    try:
        report = scheduler.run()
    except ValidationError as e:
        _report_validation(e)
        return TerminalReason.VALIDATION_ERROR.exit_code

    report.render()

    if report.reason == TerminalReason.DONE and cfg.create_pr and integration != base_branch:
        _open_pull_request(cfg, store_path, repo_dir, integration, base_branch)

    return report.exit_code


def _open_pull_request(cfg: Config, store_path: Path, repo_dir: Path, branch: str, base: str) -> None:
    from ralph_moss import git_ops, log
    from ralph_moss.tasks.io import load_store, set_pr_url

    store = load_store(store_path)
    title = store.project or store.description or branch
    lines = [f"Stories completed by ralph-moss on `{branch}`:", ""]
    for story in store.stories:
        mark = "x" if story.passes else " "
        lines.append(f"- [{mark}] {story.id}: {story.title}")
    url = git_ops.create_pull_request(branch, base, title, "\n".join(lines), draft=cfg.draft_pr, cwd=repo_dir)
    if not url:
        return
    set_pr_url(store_path, url)
    rel = store_path.relative_to(repo_dir)
    if git_ops.commit_paths(f"chore: record PR url in {rel.as_posix()}", [rel], cwd=repo_dir):
        git_ops.push(branch, cwd=repo_dir)
    else:
        log.warn("Could not commit prUrl")


def _show_dry_run(cfg: Config, store: TaskStore) -> None:
    from rich.markup import escape

    from ralph_moss import log
    from ralph_moss.resolver import plan_rounds

    log.console.print("")
    log.console.print("[bold]============================================[/bold]")
    log.console.print("[bold]Ralph Moss[/bold] — Dry run (no execution)")
    if store.branch_name:
        log.console.print(f"Integration branch: [cyan]{store.branch_name}[/cyan]")

    remaining = store.remaining_ids()
    if not remaining:
        log.success("No remaining stories.")
        log.console.print("[bold]============================================[/bold]")
        return

    max_parallel = cfg.max_parallel if cfg.isolation else 1
    rounds = plan_rounds(store, max_parallel)
    planned = {sid for batch in rounds for sid in batch}
    for n, batch in enumerate(rounds, 1):
        log.console.print(f"Round {n}:")
        for sid in batch:
            story = store.get_story(sid)
            log.console.print(escape(f"  - [{sid}] {story.title if story else ''}"))
    unreachable = [sid for sid in remaining if sid not in planned]
    if unreachable:
        log.warn(f"Never runnable (cycle or blocked dependency): {', '.join(unreachable)}")
    log.console.print("[bold]============================================[/bold]")


def _show_banner(cfg: Config, store: TaskStore, integration: str) -> None:
    from ralph_moss import log

    engine_display = "[magenta]Claude Code[/magenta]" if not cfg.agent_cmd else f"[cyan]{cfg.agent_cmd}[/cyan]"
    log.console.print("[bold]============================================[/bold]")
    log.console.print("[bold]Ralph Moss[/bold] — Running until every story passes")
    log.console.print(f"Engine: {engine_display}")
    log.console.print(f"Stories: {len(store.remaining_ids())} remaining of {len(store.stories)}")
    log.console.print(f"Integration branch: [cyan]{integration}[/cyan]")

    parts: list[str] = [f"parallel:{cfg.max_parallel}" if cfg.isolation else "shared-checkout"]
    if cfg.keep_worktrees:
        parts.append("keep-worktrees")
    if cfg.max_iterations:
        parts.append(f"max-rounds:{cfg.max_iterations}")
    if cfg.max_cost:
        parts.append(f"budget:${cfg.max_cost:.2f}")
    if cfg.max_duration:
        parts.append(f"max-time:{cfg.max_duration}s")
    if cfg.quality_gate:
        parts.append("quality-gate")
    if cfg.review:
        parts.append("review")
    if cfg.create_pr:
        parts.append("draft-pr" if cfg.draft_pr else "create-pr")
    log.console.print(f"Mode: {' '.join(parts)}")
    log.console.print("[bold]============================================[/bold]")

