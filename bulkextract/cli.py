"""
CLI interface for bulkextract.

Provides commands to initialize configuration, preview the plan for an
extraction, and run an extraction into a JSON Lines file.

The remote session is built by the factory named in config.yaml
(`connection: "module:factory"`); the factory is called with the loaded
ExtractorConfig and returns a BulkConnection. An optional `query_api`
factory returns the REST QueryApi used for counts and soft deletes.
"""


import click
from pathlib import Path

from bulkextract import __version__


@click.group()
@click.version_option(version=__version__, prog_name="bulkextract")
@click.pass_context
def main(ctx):
    """
    bulkextract - Bulk data extraction engine.

    Export entities through an asynchronous bulk job API.
    """
    from bulkextract.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # init and plan work without a config; run checks ctx.obj itself
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize bulkextract configuration."""
    from bulkextract.config import BulkConfig, get_bulkextract_home
    import yaml

    home = get_bulkextract_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    bulk = BulkConfig().to_dict()
    bulk.pop("api_version")
    default_cfg = {
        "bulk": bulk,
        "logging": {
            "level": "INFO",
            "format": "structured",
            "console": True,
            "output": str(home / "logs" / "bulkextract-{date}.log"),
        },
        "connection": None,
        "query_api": None,
        "catalog": None,
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized bulkextract config at {cfg_path}")
    click.echo("Set `connection` to the factory that opens your bulk API session.")


@main.command("plan")
@click.argument("entity")
@click.option("--query", "-q", required=True, help="Base query, optionally ending in LIMIT")
@click.option("--where", "-w", "predicates", multiple=True, help="Predicate ANDed into the query (repeatable)")
@click.option("--expected-count", type=int, default=None, help="Known record count for the chunking decision")
@click.pass_context
def plan(ctx, entity: str, query: str, predicates: tuple[str, ...], expected_count: int | None):
    """
    Show how an extraction would run, without contacting the server.

    ENTITY is the entity to extract.

    Examples:

        bulkextract plan Account -q "SELECT Id, Name FROM Account"

        bulkextract plan Account -q "SELECT Id FROM Account" -w "Name != null" --expected-count 500000
    """
    from bulkextract.config import BulkConfig
    from bulkextract.orchestrator import decide_chunking
    from bulkextract.query import compose_query
    from bulkextract.utils import print_warning

    config = ctx.obj.get("config")
    if config is None:
        print_warning(f"No config loaded ({ctx.obj.get('config_error')}); using defaults")
        bulk = BulkConfig()
    else:
        bulk = config.bulk

    try:
        composed = compose_query(query, list(predicates))
    except Exception as e:
        click.echo(f"✗ plan for {entity} failed: {e}", err=True)
        raise SystemExit(1)

    decision = decide_chunking(bulk, expected_count)

    click.echo(f"Entity:         {entity}")
    click.echo(f"Operation:      {bulk.operation.value} (API {bulk.resolved_api_version})")
    click.echo(f"Query:          {composed}")
    click.echo(f"PK chunking:    {'enabled' if decision.enabled else 'disabled'} ({decision.reason})")
    click.echo(f"Chunk size:     {decision.chunk_size}")
    click.echo(f"Poll interval:  {decision.poll_interval}s")
    click.echo(f"Batch size:     {bulk.fetch_size}")
    click.echo(f"Retry limit:    {bulk.fetch_retry_limit}")


@main.command("run")
@click.argument("entity")
@click.option("--query", "-q", required=True, help="Base query, optionally ending in LIMIT")
@click.option("--where", "-w", "predicates", multiple=True, help="Predicate ANDed into the query (repeatable)")
@click.option("--expected-count", type=int, default=None, help="Known record count; skips the count query")
@click.option("--columns", "-c", default=None, help="Comma-separated schema columns (default: the SELECT list)")
@click.option("--table", "-t", default=None, help="Register the output as DATABASE.TABLE in the configured catalog")
@click.option(
    "--output", "-o",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="JSON Lines file to write",
)
@click.pass_context
def run(
    ctx,
    entity: str,
    query: str,
    predicates: tuple[str, ...],
    expected_count: int | None,
    columns: str | None,
    table: str | None,
    output: Path,
):
    """
    Extract ENTITY into a JSON Lines file.

    Examples:

        bulkextract run Account -q "SELECT Id, Name FROM Account" -o account.jsonl

        bulkextract run Account -q "SELECT FIELDS(STANDARD) FROM Account" -c Id,IsDeleted -o account.jsonl

        bulkextract run Account -q "SELECT Id, Name FROM Account" -o account.jsonl -t raw.account
    """
    from bulkextract.catalog import TableSpec
    from bulkextract.config import import_factory
    from bulkextract.extractor import BulkExtractor
    from bulkextract.sinks import JsonlSink
    from bulkextract.utils import print_success, setup_logging

    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'bulkextract init' to create a configuration file.", err=True)
        raise SystemExit(1)

    config = ctx.obj["config"]
    if not config.connection:
        click.echo("✗ No connection factory configured (set `connection` in config.yaml)", err=True)
        raise SystemExit(1)

    table_spec = None
    if table:
        database, _, name = table.partition(".")
        if not database or not name:
            click.echo(f"✗ --table must be DATABASE.TABLE, got {table!r}", err=True)
            raise SystemExit(1)
        if not config.catalog:
            click.echo("✗ No catalog factory configured (set `catalog` in config.yaml)", err=True)
            raise SystemExit(1)
        table_spec = TableSpec(database=database, table=name, location=str(output.resolve()))

    setup_logging(
        config.get_log_file_path(),
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )

    try:
        connection = import_factory(config.connection)(config)
        query_api = import_factory(config.query_api)(config) if config.query_api else None
        catalog = import_factory(config.catalog)(config) if config.catalog else None
        schema = [c.strip() for c in columns.split(",") if c.strip()] if columns else None

        with BulkExtractor(connection, config.bulk, query_api=query_api, catalog=catalog) as extractor, JsonlSink(output) as sink:
            for batch in extractor.extract(
                entity,
                query,
                list(predicates),
                columns=schema,
                expected_record_count=expected_count,
                table=table_spec,
            ):
                sink.write(batch)

        print_success(f"{entity} extracted: {sink.records_written} records -> {output}")
    except Exception as e:
        click.echo(f"✗ {entity} failed: {e}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
