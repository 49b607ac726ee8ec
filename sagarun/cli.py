"""
CLI interface for sagarun.

Provides commands to list, inspect, validate, simulate and execute
orchestration specs stored under the definitions directory:

    definitions/platform/**            platform defaults
    definitions/tenants/<tenant_id>/** tenant overrides

Payloads are inline JSON or ``@path/to/payload.json``.
"""

import json
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from sagarun import __version__
from sagarun.config import SagarunConfig
from sagarun.errors import SagarunError


def _get_config(ctx) -> SagarunConfig:
    """Config from ctx, falling back to defaults when no config.yaml exists."""
    config = ctx.obj.get("config")
    if config is None:
        if ctx.obj.get("config_invalid"):
            click.echo(f"✗ Invalid config: {ctx.obj.get('config_error')}", err=True)
            raise SystemExit(1)
        config = SagarunConfig()
    definitions_dir = ctx.obj.get("definitions_dir")
    if definitions_dir:
        config = replace(config, definitions_dir=str(definitions_dir))
    return config


def _parse_payload(value: Optional[str]) -> dict:
    if not value:
        return {}
    try:
        if value.startswith("@"):
            with open(Path(value[1:]).expanduser()) as f:
                data = json.load(f)
        else:
            data = json.loads(value)
    except (OSError, json.JSONDecodeError) as e:
        raise click.BadParameter(f"cannot read payload: {e}", param_hint="PAYLOAD")
    if not isinstance(data, dict):
        raise click.BadParameter("payload must be a JSON object", param_hint="PAYLOAD")
    return data


def _build_resolver(config: SagarunConfig):
    from sagarun.registry import FileSpecStore
    from sagarun.resolver import SpecResolver

    return SpecResolver(FileSpecStore(config.definitions_path))


@click.group()
@click.version_option(version=__version__, prog_name="sagarun")
@click.option(
    "--definitions-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Spec definitions directory (overrides config)",
)
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity to the console")
@click.pass_context
def main(ctx, definitions_dir: Optional[Path], verbose: bool):
    """
    sagarun - Registry-driven saga orchestration engine.

    Run multi-step orchestration specs with idempotent replay,
    compensating rollback and resource locking.
    """
    from sagarun.config import ConfigError, load_config
    from sagarun.utils import setup_logging

    ctx.ensure_object(dict)
    ctx.obj["definitions_dir"] = definitions_dir
    try:
        ctx.obj["config"] = load_config()
    except FileNotFoundError as e:
        # Commands fall back to defaults; init creates the file
        ctx.obj["config_error"] = str(e)
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)
        ctx.obj["config_invalid"] = True

    config = ctx.obj.get("config")
    if config is not None or verbose:
        config = config or SagarunConfig()
        setup_logging(
            log_file=config.log_path,
            log_level=config.log_level,
            log_format=config.log_format,
            console_output=verbose,
        )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize sagarun configuration."""
    from sagarun.config import get_sagarun_home
    import yaml

    home = get_sagarun_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    definitions_dir = home / "definitions"
    default_cfg = SagarunConfig(
        definitions_dir=str(definitions_dir),
        state_dir=str(home / "state"),
        env_file=str(home / ".env"),
    ).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    (definitions_dir / "platform").mkdir(parents=True, exist_ok=True)
    (definitions_dir / "tenants").mkdir(parents=True, exist_ok=True)

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# REDIS_URL=redis://localhost:6379/0\n")

    click.echo(f"Initialized sagarun config at {cfg_path}")


@main.command("list")
@click.option("--tenant", help="Only list specs registered for this tenant")
@click.pass_context
def list_specs(ctx, tenant: Optional[str]):
    """List registered orchestration specs."""
    from sagarun.registry import FileSpecStore

    config = _get_config(ctx)
    try:
        entries = FileSpecStore(config.definitions_path).list_specs(tenant)
    except SagarunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if not entries:
        click.echo("No orchestration specs found.")
        return

    by_tenant: dict[str, list[str]] = {}
    for tenant_id, smart_code in entries:
        by_tenant.setdefault(tenant_id, []).append(smart_code)

    for tenant_id in sorted(by_tenant):
        label = "platform" if tenant_id == config.default_tenant_id else tenant_id
        click.echo(f"{label}:")
        for smart_code in by_tenant[tenant_id]:
            click.echo(f"  {smart_code}")


@main.command("show")
@click.argument("smart_code")
@click.option("--tenant", help="Tenant to resolve for")
@click.pass_context
def show_spec(ctx, smart_code: str, tenant: Optional[str]):
    """Show a resolved spec."""
    from sagarun.resolver import spec_hash

    config = _get_config(ctx)
    tenant_id = tenant or config.default_tenant_id
    try:
        spec = _build_resolver(config).resolve(smart_code, tenant_id)
    except SagarunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Spec: {spec.smart_code}")
    click.echo(f"Intent: {spec.intent}")
    click.echo(f"Registered for: {spec.tenant_id}")
    click.echo(f"SHA256: {spec_hash(spec)}")
    click.echo()
    click.echo(json.dumps(spec.to_dict(), indent=2))


@main.command("validate")
@click.argument("smart_code")
@click.option("--tenant", help="Tenant to resolve for")
@click.pass_context
def validate_spec(ctx, smart_code: str, tenant: Optional[str]):
    """Validate a spec's DAG structure."""
    from sagarun import scheduler
    from sagarun.validator import validate

    config = _get_config(ctx)
    tenant_id = tenant or config.default_tenant_id
    try:
        spec = _build_resolver(config).resolve(smart_code, tenant_id)
    except SagarunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    report = validate(spec)
    if not report.valid:
        click.echo(f"✗ {spec.smart_code} is invalid:", err=True)
        for error in report.errors:
            click.echo(f"  - {error}", err=True)
        raise SystemExit(1)

    try:
        node_order = scheduler.order(spec)
    except SagarunError as e:
        click.echo(f"✗ {spec.smart_code} is invalid: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"✓ {spec.smart_code} is valid ({len(node_order)} nodes)")
    click.echo(f"  Order: {' -> '.join(node_order)}")


@main.command("simulate")
@click.argument("smart_code")
@click.argument("payload", required=False)
@click.option("--tenant", help="Tenant to resolve for")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def simulate_spec(ctx, smart_code: str, payload: Optional[str], tenant: Optional[str], as_json: bool):
    """Dry-run a spec: order, conditions and boundaries, with no side effects."""
    from sagarun.executor import simulate_spec as simulate

    config = _get_config(ctx)
    tenant_id = tenant or config.default_tenant_id
    data = _parse_payload(payload)
    try:
        spec = _build_resolver(config).resolve(smart_code, tenant_id)
        plan = simulate(spec, data)
    except SagarunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    plan.tenant_id = tenant_id

    if as_json:
        click.echo(json.dumps(plan.to_dict(), indent=2))
        return

    click.echo("=" * 50)
    click.echo(f"=== SIMULATION === {spec.smart_code} (no side effects)")
    click.echo("=" * 50)
    for node_id in plan.order:
        result = plan.conditions.get(node_id)
        if result is None:
            marker = "run"
        else:
            marker = "run (when: true)" if result else "skip (when: false)"
        click.echo(f"  {node_id}: {marker}")
        if node_id in plan.diagnostics:
            click.echo(f"    ! {plan.diagnostics[node_id]}")
    for name, members in plan.transaction_boundaries.items():
        click.echo(f"  boundary {name}: {', '.join(members)}")


@main.command("execute")
@click.argument("smart_code")
@click.argument("payload", required=False)
@click.option("--tenant", help="Tenant to resolve for")
@click.option("--run-epoch", help="Idempotency scope; reuse to replay safely")
@click.option(
    "--procedures",
    "procedure_refs",
    multiple=True,
    help="Load procedures from module:attribute (repeatable)",
)
@click.option(
    "--entry-points/--no-entry-points",
    default=True,
    help="Discover procedures from installed sagarun.procedures entry points",
)
@click.pass_context
def execute_spec(
    ctx,
    smart_code: str,
    payload: Optional[str],
    tenant: Optional[str],
    run_epoch: Optional[str],
    procedure_refs: tuple[str, ...],
    entry_points: bool,
):
    """Execute a spec and print the execution summary."""
    from sagarun.executor import Executor
    from sagarun.procedures import LocalProcedureRuntime

    config = _get_config(ctx)
    tenant_id = tenant or config.default_tenant_id
    data = _parse_payload(payload)

    runtime = LocalProcedureRuntime()
    try:
        if entry_points:
            runtime.load_entry_points()
        for ref in procedure_refs:
            runtime.load_reference(ref)
    except (ImportError, AttributeError, ValueError) as e:
        click.echo(f"✗ Cannot load procedures: {e}", err=True)
        raise SystemExit(1)

    executor = Executor.from_config(config, runtime)
    try:
        summary = executor.execute(smart_code, data, tenant_id=tenant_id, run_epoch=run_epoch)
    except SagarunError as e:
        click.echo(f"✗ {smart_code} failed: {e}", err=True)
        if e.summary is not None:
            click.echo(json.dumps(e.summary.to_dict(), indent=2, default=str))
        raise SystemExit(1)

    click.echo(json.dumps(summary.to_dict(), indent=2, default=str))
    click.echo(f"✓ {summary.smart_code} completed in {summary.elapsed_ms}ms", err=True)
