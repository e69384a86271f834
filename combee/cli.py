import asyncio
import code
import inspect
import json
import logging
import runpy

import click

from .config import Settings
from .errors import CombeeError
from .engine import QueryEngine
from .models import CATEGORIES, JobRecord
from .registry import Combee


def _load_json(value, what: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{what} is not valid JSON: {e}")


def _format_job(job: JobRecord) -> str:
    return f"{job.id:>10} | {job.status:<10} | data={json.dumps(job.data, default=str)}"


def _echo_jobs(jobs, as_json: bool, empty: str = "No jobs."):
    if as_json:
        click.echo(json.dumps([j.as_dict() for j in jobs], indent=2, default=str))
        return
    if not jobs:
        click.echo(empty)
        return
    for job in jobs:
        click.echo(_format_job(job))


def _fail(e):
    msg = e.args[0] if isinstance(e, KeyError) and e.args else e
    click.secho(f"Error: {msg}", fg="red")
    raise SystemExit(1)


def _settings(ctx) -> Settings:
    try:
        return Settings.from_env(**ctx.obj)
    except CombeeError as e:
        _fail(e)


def _run(ctx, queue, op):
    """Open the store, run ``op(engine)`` to completion, close, report errors the CLI way."""
    settings = _settings(ctx)

    async def main():
        combee = await Combee.open(settings)
        try:
            engine = combee[queue] if queue is not None else None
            return await op(combee if engine is None else engine)
        finally:
            await combee.close()

    try:
        return asyncio.run(main())
    except (CombeeError, KeyError) as e:
        _fail(e)


category_option = click.option(
    "--category", "-c", type=click.Choice(CATEGORIES), default="waiting", show_default=True,
    help="Job state to scan",
)
filter_option = click.option("--filter", "-f", "filter_json", default=None, help="Query object as JSON, e.g. '{\"data.kind\": \"email\"}'")
json_option = click.option("--json", "as_json", is_flag=True, help="Print jobs as a JSON array")


@click.group(help="combee — introspect jobs in bee-queue style job queues")
@click.option("--redis", "redis_url", default=None, help="Redis URL (env COMBEE_REDIS_URL)")
@click.option("--db", "db_path", default=None, help="sqlite job store path (env COMBEE_DB)")
@click.option("--queues", "-q", default=None, help="Comma-separated queue names (env COMBEE_QUEUES)")
@click.option("--prefix", default=None, help="Key prefix, default 'bq'")
@click.option("--batch-size", type=int, default=None, help="Jobs fetched per page, default 50")
@click.option("--discover", is_flag=True, help="Find queue names in the store")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, redis_url, db_path, queues, prefix, batch_size, discover, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Settings are built per command so `--help` works without a configured store.
    ctx.obj = dict(
        redis_url=redis_url,
        db_path=db_path,
        queues=queues,
        prefix=prefix,
        batch_size=batch_size,
        discover=discover,
    )


# ---------- Queues ----------
@cli.command("queues", help="List known queues")
@click.pass_context
def queues_cmd(ctx):
    async def op(combee):
        return combee.list_queues()

    for q in _run(ctx, None, op):
        click.echo(q["name"])


@cli.command("stats", help="Job counts per category")
@click.argument("queue")
@click.pass_context
def stats_cmd(ctx, queue):
    async def op(engine):
        return await engine.stats()

    click.echo(json.dumps(_run(ctx, queue, op), indent=2))


# ---------- Jobs ----------
@cli.command("list", help="Show one page of jobs without filtering")
@click.argument("queue")
@click.option("--category", "-c", type=click.Choice(CATEGORIES), default="active", show_default=True)
@click.option("--start", type=int, default=0, show_default=True)
@click.option("--size", type=int, default=None, help="Page size, default 100")
@json_option
@click.pass_context
def list_cmd(ctx, queue, category, start, size, as_json):
    page = {"start": start}
    if size is not None:
        page["size"] = size

    async def op(engine):
        return await engine.list_page(category, page)

    _echo_jobs(_run(ctx, queue, op), as_json)


@cli.command("find", help="Show jobs matching a filter")
@click.argument("queue")
@category_option
@filter_option
@click.option("--limit", type=int, default=None, help="Stop after this many matches")
@json_option
@click.pass_context
def find_cmd(ctx, queue, category, filter_json, limit, as_json):
    query = _load_json(filter_json, "--filter")

    async def op(engine):
        if limit is None:
            return await engine.find(category, query)
        return await engine.matching(category, query).limit(limit).to_list()

    _echo_jobs(_run(ctx, queue, op), as_json, empty="No matching jobs.")


@cli.command("count", help="Count jobs matching a filter")
@click.argument("queue")
@category_option
@filter_option
@click.pass_context
def count_cmd(ctx, queue, category, filter_json):
    query = _load_json(filter_json, "--filter")

    async def op(engine):
        return await engine.count(category, query)

    click.echo(_run(ctx, queue, op))


@cli.command("distinct", help="Distinct values of a dotted field among matching jobs")
@click.argument("queue")
@click.argument("field")
@category_option
@filter_option
@click.pass_context
def distinct_cmd(ctx, queue, field, category, filter_json):
    query = _load_json(filter_json, "--filter")

    async def op(engine):
        return await engine.distinct(category, field, query)

    result = _run(ctx, queue, op)
    if not len(result):
        click.echo("No matching jobs.")
        return
    for value, n in result.items():
        click.echo(f"{n:>8} | {json.dumps(value, default=repr)}")


@cli.command("create", help="Create a job from a JSON payload")
@click.argument("queue")
@click.argument("data")
@click.option("--delay", "delay_str", default=None, help="Run after a delay, e.g. 20s, 5m, 1h30m")
@click.pass_context
def create_cmd(ctx, queue, data, delay_str):
    payload = _load_json(data, "DATA")

    async def op(engine):
        return await engine.create_job(payload, delay=delay_str)

    job = _run(ctx, queue, op)
    click.secho(f"Created job {job.id} on {queue}", fg="green")


@cli.command("remove", help="Remove jobs matching a filter")
@click.argument("queue")
@category_option
@filter_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def remove_cmd(ctx, queue, category, filter_json, yes):
    query = _load_json(filter_json, "--filter")
    if not yes:
        what = "ALL jobs" if not query else f"jobs matching {filter_json}"
        click.confirm(f"Remove {what} in {queue}:{category}?", abort=True)

    async def op(engine):
        return await engine.remove_matching_report(category, query)

    report = _run(ctx, queue, op)
    click.secho(f"removed {report.removed} jobs", fg="green")
    if report.failures:
        click.secho(f"{report.failed} removals failed", fg="yellow")
        for failure in report.failures:
            click.echo(f"  {failure}")


@cli.command("export", help="Write matching jobs to a JSON file")
@click.argument("queue")
@category_option
@filter_option
@click.option("--output", "-o", default=None, help="Target file, default <queue>-<category>-<date>.json")
@click.pass_context
def export_cmd(ctx, queue, category, filter_json, output):
    query = _load_json(filter_json, "--filter")

    async def op(engine):
        return await engine.export(category, query, output)

    path, n = _run(ctx, queue, op)
    click.secho(f"Wrote {n} jobs to {path}", fg="green")


# ---------- Shell ----------
class Blocking:
    """Shell-side proxy: coroutine results of wrapped calls are run to completion."""

    def __init__(self, target, loop):
        self._target = target
        self._loop = loop

    def _wrap(self, value):
        if asyncio.iscoroutine(value):
            return self._wrap(self._loop.run_until_complete(value))
        if isinstance(value, (Combee, QueryEngine)) or inspect.ismethod(value):
            return Blocking(value, self._loop)
        return value

    def __getattr__(self, name):
        return self._wrap(getattr(self._target, name))

    def __getitem__(self, name):
        return self._wrap(self._target[name])

    def __call__(self, *args, **kwargs):
        return self._wrap(self._target(*args, **kwargs))

    def __repr__(self):
        return repr(self._target)


def pretty_print_job(job):
    body = job.as_dict() if isinstance(job, JobRecord) else job
    click.echo(json.dumps(body, indent=2, default=str))


@cli.command("shell", help="Interactive Python shell with `combee` bound")
@click.option("--load", "load_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Python file whose setup(context) adds helpers to the shell")
@click.pass_context
def shell_cmd(ctx, load_path):
    settings = _settings(ctx)
    loop = asyncio.new_event_loop()
    try:
        combee = loop.run_until_complete(Combee.open(settings))
    except CombeeError as e:
        loop.close()
        _fail(e)

    context = {
        "combee": Blocking(combee, loop),
        "run": loop.run_until_complete,
        "pretty_print_job": pretty_print_job,
        "CATEGORIES": CATEGORIES,
    }
    if load_path:
        setup = runpy.run_path(load_path).get("setup")
        if callable(setup):
            setup(context)

    banner = (
        "combee shell. queues: " + ", ".join(q["name"] for q in combee.list_queues())
        + "\ne.g. combee.myqueue.count('failed', {'data.kind': 'email'})"
    )
    try:
        code.interact(banner=banner, local=context, exitmsg="")
    finally:
        loop.run_until_complete(combee.close())
        loop.close()


def main():
    cli()
