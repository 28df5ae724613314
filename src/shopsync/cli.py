from __future__ import annotations

import asyncio
import json

import typer

from shopsync.actions import Action, dispatch
from shopsync.config import Settings
from shopsync.db import ShopDB
from shopsync.logging_config import configure_logging
from shopsync.models import ScheduleRule
from shopsync.repo import Repo
from shopsync.util import new_id
from shopsync.web.app import run_web
from shopsync.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)
shop_app = typer.Typer(no_args_is_help=True)
schedule_app = typer.Typer(no_args_is_help=True)
app.add_typer(shop_app, name="shop")
app.add_typer(schedule_app, name="schedule")


@app.callback()
def main(log_level: str = typer.Option("", help="Overrides LOG_LEVEL.")) -> None:
    configure_logging(log_level or None)


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    if action == "init":
        db = ShopDB(settings.db_path)
        db.init()
        typer.echo(f"OK db init: {settings.db_path} (schema v{db.get_schema_version()})")
        return
    raise typer.BadParameter("action must be: init")


@shop_app.command("add")
def shop_add(
    shop_id: int = typer.Option(...),
    refresh_token: str = typer.Option(..., help="Refresh token from the shop authorization."),
    name: str | None = typer.Option(None),
    access_token: str | None = typer.Option(None),
    expires_at: int | None = typer.Option(None, help="Epoch seconds."),
    partner_id: int | None = typer.Option(None, help="Overrides SHOPEE_PARTNER_ID for this shop."),
    partner_key: str | None = typer.Option(None, help="Overrides SHOPEE_PARTNER_KEY for this shop."),
) -> None:
    settings = Settings.load()
    ShopDB(settings.db_path).init()
    Repo(settings.db_path).upsert_shop(
        shop_id=shop_id,
        name=name,
        partner_id=partner_id,
        partner_key=partner_key,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
    )
    typer.echo(f"OK shop {shop_id}")


@schedule_app.command("add")
def schedule_add(
    shop_id: int = typer.Option(...),
    campaign_id: int = typer.Option(...),
    ad_type: str = typer.Option(..., help="auto|manual"),
    start: str = typer.Option(..., help="HH:MM (shop timezone)"),
    end: str = typer.Option(..., help="HH:MM (shop timezone)"),
    budget: float = typer.Option(...),
    days: str = typer.Option("", help="Comma separated, 0=Sunday..6=Saturday. Empty = every day."),
    dates: str = typer.Option("", help="Comma separated YYYY-MM-DD. Overrides --days."),
    campaign_name: str | None = typer.Option(None),
) -> None:
    def _hm(v: str) -> tuple[int, int]:
        h, _, m = v.partition(":")
        return int(h), int(m or 0)

    hs, ms = _hm(start)
    he, me = _hm(end)
    rule = ScheduleRule(
        id=new_id("sch"),
        shop_id=shop_id,
        campaign_id=campaign_id,
        campaign_name=campaign_name,
        ad_type=ad_type.strip().lower(),
        hour_start=hs,
        minute_start=ms,
        hour_end=he,
        minute_end=me,
        budget=budget,
        days_of_week=tuple(int(d) for d in days.split(",") if d.strip()),
        specific_dates=tuple(d.strip() for d in dates.split(",") if d.strip()),
    )
    settings = Settings.load()
    ShopDB(settings.db_path).init()
    Repo(settings.db_path).upsert_schedule(rule)
    typer.echo(f"OK schedule {rule.id}")


@app.command("invoke")
def invoke_cmd(
    action: str = typer.Argument(..., help=" | ".join(a.value for a in Action)),
    shop_id: int | None = typer.Option(None),
    payload: str = typer.Option("{}", help="Extra JSON payload."),
) -> None:
    try:
        body = json.loads(payload or "{}")
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"payload is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise typer.BadParameter("payload must be a JSON object")
    if shop_id is not None:
        body["shop_id"] = shop_id

    settings = Settings.load()
    ShopDB(settings.db_path).init()
    result = asyncio.run(dispatch(settings, Repo(settings.db_path), action, body))
    typer.echo(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    if not result.get("success"):
        raise typer.Exit(code=1)


@app.command("web")
def web_cmd() -> None:
    run_web(Settings.load())


@app.command("worker")
def worker_cmd() -> None:
    run_worker(Settings.load())


@app.command("tick")
def tick_cmd() -> None:
    summary = run_tick(Settings.load())
    typer.echo(json.dumps(summary))


if __name__ == "__main__":
    app()
