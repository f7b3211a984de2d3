from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from dealscout import services
from dealscout.config import Settings, get_settings
from dealscout.db import create_db_engine, create_session_factory, init_db
from dealscout.errors import ListingNotFound, UnknownSourceError
from dealscout.profiles import load_profiles
from dealscout.schemas import SearchQuery
from dealscout.store import SqlListingStore

app = typer.Typer(help="Business-for-sale listing ingestion, scoring and due-diligence toolkit")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    database_url: str | None = typer.Option(None, "--database-url", help="SQLAlchemy URL; overrides DEALSCOUT_DATABASE_URL."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if database_url:
        os.environ["DEALSCOUT_DATABASE_URL"] = database_url
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _open_store(settings: Settings) -> SqlListingStore:
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    return SqlListingStore(create_session_factory(engine))


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:,.2f}"
    return str(value)


def _money(value: float | None) -> str:
    return "-" if value is None else f"${value:,.0f}"


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    scalars = [(k, _fmt(v)) for k, v in payload.items() if not isinstance(v, (dict, list))]
    if scalars:
        _render_table(title, scalars)
    for key, value in payload.items():
        if isinstance(value, dict):
            _render_table(f"{title} · {key}", [(str(k), _fmt(v)) for k, v in value.items()], border_style="magenta")
        elif isinstance(value, list) and value and not isinstance(value[0], dict):
            _render_table(f"{title} · {key}", [(str(i + 1), _fmt(v)) for i, v in enumerate(value)], border_style="yellow")


def _parse_filters(min_price: float | None, max_price: float | None, industry: list[str], no_remote: bool) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    if min_price is not None:
        filters["min_price"] = min_price
    if max_price is not None:
        filters["max_price"] = max_price
    if industry:
        filters["industries"] = industry
    if no_remote:
        filters["include_remote"] = False
    return filters


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    settings = get_settings()
    _open_store(settings)
    _print("init-db", {"status": "ok", "database_url": settings.database_url}, ctx)


@app.command("sources")
def sources_command(ctx: typer.Context) -> None:
    rows = services.list_sources(load_profiles(get_settings()))
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in ("Key", "Label", "Quality adj.", "Risk adj.", "Sample data", "Live"):
        table.add_column(col)
    for r in rows:
        table.add_row(
            str(r["key"]), str(r["label"]), str(r["quality_adjustment"]), str(r["risk_adjustment"]),
            "yes" if r["sample_data"] else "", "yes" if r["live"] else "",
        )
    console.print(Panel(table, title="sources", border_style="cyan"))


@app.command("import")
def import_command(
    ctx: typer.Context,
    sources: list[str] = typer.Argument(..., help="Source names, e.g. flippa crexi 'Empire Flippers'."),
    min_price: float | None = typer.Option(None, help="Minimum asking price."),
    max_price: float | None = typer.Option(None, help="Maximum asking price."),
    industry: list[str] = typer.Option([], help="Only these industries; repeatable."),
    no_remote: bool = typer.Option(False, "--no-remote", help="Skip remote/online businesses."),
    feed_url: str | None = typer.Option(None, help="Pull from a JSON feed instead of the sample catalogue."),
    xlsx: Path | None = typer.Option(None, exists=True, dir_okay=False, help="Read listings from an .xlsx export."),
    region: str | None = typer.Option(None, help="Craigslist region for a live search, e.g. newyork."),
) -> None:
    settings = get_settings()
    store = _open_store(settings)
    filters = _parse_filters(min_price, max_price, industry, no_remote)
    try:
        summary = asyncio.run(services.bulk_import_many(
            store, settings, load_profiles(settings), sources, filters,
            feed_url=feed_url, xlsx_path=xlsx, region=region,
        ))
    except UnknownSourceError as exc:
        raise typer.BadParameter(str(exc)) from exc
    payload = {
        **summary.totals(),
        "sources": {r.source: f"{r.imported} imported, {r.skipped} skipped, {r.errors} errors" for r in summary.sources},
    }
    failures = {r.source: r.error_message for r in summary.sources if r.error_message}
    if failures:
        payload["failures"] = failures
    _print("import", payload, ctx)


@app.command("search")
def search_command(
    ctx: typer.Context,
    keywords: str | None = typer.Argument(None, help="Substring of name or industry."),
    industry: list[str] = typer.Option([], help="Exact industry; repeatable."),
    city: str | None = typer.Option(None),
    state: str | None = typer.Option(None),
    min_price: float | None = typer.Option(None),
    max_price: float | None = typer.Option(None),
    min_revenue: float | None = typer.Option(None),
    min_cash_flow: float | None = typer.Option(None),
    sort_by: str = typer.Option("quality_score", help="price, revenue, cash_flow, quality_score, created_at"),
    asc: bool = typer.Option(False, "--asc", help="Sort ascending."),
    limit: int = typer.Option(20, min=1, max=100),
    offset: int = typer.Option(0, min=0),
) -> None:
    try:
        query = SearchQuery(
            keywords=keywords, industries=industry, city=city, state=state,
            min_price=min_price, max_price=max_price, min_revenue=min_revenue, min_cash_flow=min_cash_flow,
            sort_by=sort_by, sort_order="asc" if asc else "desc", limit=limit, offset=offset,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    results = services.search(_open_store(get_settings()), query)
    if _wants_json(ctx):
        typer.echo(results.model_dump_json(indent=2))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in ("ID", "Name", "Industry", "Location", "Price", "Range", "Quality", "Risk"):
        table.add_column(col)
    for l in results.listings:
        table.add_row(
            l.id or "", l.name, l.industry, ", ".join(p for p in (l.location.city, l.location.state) if p),
            _money(l.financial_data.asking_price), l.price_range or "-", str(l.quality_score), str(l.risk_score),
        )
    more = " (more available)" if results.has_more else ""
    console.print(Panel(table, title=f"{results.total_count} listings{more}", border_style="cyan"))


@app.command("show")
def show_command(ctx: typer.Context, listing_id: str = typer.Argument(...)) -> None:
    try:
        listing = services.get_by_id(_open_store(get_settings()), listing_id)
    except ListingNotFound as exc:
        raise typer.BadParameter(str(exc)) from exc
    _print(listing.name, listing.model_dump(mode="json", exclude_none=True), ctx)


@app.command("due-diligence")
def due_diligence_command(
    ctx: typer.Context,
    listing_id: str = typer.Argument(...),
    organization_id: str = typer.Option("default", "--org", help="Organization the report belongs to."),
    investment: float | None = typer.Option(None, help="Investment amount; defaults to DEALSCOUT_DEFAULT_INVESTMENT."),
) -> None:
    settings = get_settings()
    try:
        report = services.generate_due_diligence_report(
            _open_store(settings), settings, listing_id, organization_id, investment=investment,
        )
    except ListingNotFound as exc:
        raise typer.BadParameter(str(exc)) from exc
    if _wants_json(ctx):
        typer.echo(report.model_dump_json(indent=2))
        return
    risk = report.risk_assessment
    _print("risk", {
        "composite_score": risk.composite_score, "grade": risk.grade,
        "components": risk.components.model_dump(), "recommendations": risk.recommendations,
    }, ctx)
    _print("roi", report.roi_projection.model_dump(), ctx)
    _print("sba", report.sba_assessment.model_dump(), ctx)


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    _print("stats", services.compute_stats(_open_store(get_settings())).model_dump(), ctx)


@app.command("export")
def export_command(
    ctx: typer.Context,
    fmt: str = typer.Option("csv", "--format", help="csv or json"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Defaults to the exports directory."),
) -> None:
    if fmt not in ("csv", "json"):
        raise typer.BadParameter("format must be csv or json")
    settings = get_settings()
    listings = _open_store(settings).all_listings()
    path = services.write_export(listings, output or settings.exports_dir / f"listings.{fmt}", fmt)
    _print("export", {"listings": len(listings), "path": str(path)}, ctx)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8001),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("dealscout.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
