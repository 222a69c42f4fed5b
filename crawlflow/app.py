"""Typer CLI entrypoint for crawlflow."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from .config import CONFIG_EXTENSIONS, ConfigRepository, EngineSettings
from .engine import CrawlerEngine, CrawlStats
from .errors import CrawlError
from .logging_conf import available_spider_logs, configure_logging, default_log_dir, spider_logger, tail_log
from .runner import build_stages, load_spider, resolve_formats, run_config

app = typer.Typer(help="crawlflow 命令行工具", no_args_is_help=True, rich_markup_mode=None)
config_app = typer.Typer(name="config", help="引擎默认配置", no_args_is_help=True, rich_markup_mode=None)
log_app = typer.Typer(name="log", help="日志查看命令", no_args_is_help=True, rich_markup_mode=None)

console = Console()

_STAT_LABELS = (
    ("requests_sent", "发送请求"),
    ("responses_received", "接收响应"),
    ("records_accepted", "抓取数据项"),
    ("records_dropped", "丢弃数据项"),
    ("requests_abandoned", "放弃请求"),
    ("retries", "重试次数"),
)


@dataclass
class AppState:
    repository: ConfigRepository
    verbose: bool = False


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    configure_logging(verbose=verbose, log_dir=repository.locator.logs_dir)
    return AppState(repository=repository, verbose=verbose)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _render_stats(title: str, stats: CrawlStats) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("指标", style="cyan")
    table.add_column("数量", style="green", justify="right")
    values = stats.as_dict()
    for key, label in _STAT_LABELS:
        table.add_row(label, str(values[key]))
    return table


def _render_settings(settings: EngineSettings) -> Table:
    table = Table(title="引擎配置", box=box.SIMPLE_HEAD)
    table.add_column("参数", style="cyan", no_wrap=True)
    table.add_column("值", style="green", overflow="fold")
    table.add_row("concurrency_limit", str(settings.concurrency_limit))
    table.add_row("delay_seconds", str(settings.delay_seconds))
    table.add_row("delay_jitter_fraction", str(settings.delay_jitter_fraction))
    table.add_row("retry_limit", str(settings.retry_limit))
    stages = ", ".join(spec.path for spec in settings.stages) or "-"
    table.add_row("stages", stages)
    return table


app.add_typer(config_app, name="config", help="查看或初始化引擎默认配置")
app.add_typer(log_app, name="log", help="查看日志文件")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="开启调试日志", is_flag=True),
) -> None:
    ctx.obj = build_state(verbose)


@app.command("crawl", help="运行爬虫：TARGET 为配置文件路径或 'module:SpiderClass'。")
def crawl(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="运行配置文件（yaml/json）或爬虫类路径。"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="最大并发请求数。"),
    delay: Optional[float] = typer.Option(None, "--delay", min=0.0, help="每次请求前的基础延迟（秒）。"),
    retries: Optional[int] = typer.Option(None, "--retries", min=0, help="失败后的最大重试次数。"),
    output_dir: Path = typer.Option(Path("output"), "--output-dir", "-o", help="结果输出目录。"),
    formats: List[str] = typer.Option(["json"], "--format", "-f", help="输出格式：json/jsonl/csv/txt/text/both。"),
    no_validate: bool = typer.Option(False, "--no-validate", help="不丢弃校验失败的数据项。", is_flag=True),
    quiet: bool = typer.Option(False, "--quiet", help="只输出精简结果。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    repository = state.repository
    logs_dir = repository.locator.logs_dir
    target_path = Path(target)
    overrides = {
        key: value
        for key, value in (
            ("concurrency_limit", concurrency),
            ("delay_seconds", delay),
            ("retry_limit", retries),
        )
        if value is not None
    }
    try:
        if target_path.suffix in CONFIG_EXTENSIONS and target_path.exists():
            run = repository.load_run(target_path)
            if overrides:
                run = run.model_copy(update={"engine": run.engine.model_copy(update=overrides)})
            label = run.spider
            stats = run_config(
                run,
                repository.locator.project_root,
                logger_factory=lambda name: spider_logger(name, state.verbose, logs_dir),
            )
        else:
            spider = load_spider(target)
            label = spider.name
            settings = repository.load_settings().model_copy(update=overrides)
            stages = build_stages(
                output_dir,
                resolve_formats(formats),
                validate=not no_validate,
                extra=settings.build_stages(),
            )
            engine = CrawlerEngine(settings, stages, logger=spider_logger(spider.name, state.verbose, logs_dir))
            stats = engine.crawl(spider)
    except (CrawlError, ValueError, FileNotFoundError) as exc:
        console.print(f"运行失败：{exc}", style="red")
        raise typer.Exit(code=1) from exc

    if quiet:
        console.print(
            f"运行完成：请求 {stats.requests_sent}，响应 {stats.responses_received}，"
            f"数据项 {stats.records_accepted}，丢弃 {stats.records_dropped}"
        )
        return
    console.print(_render_stats(f"{label} 运行结果", stats))


@config_app.command("show", help="显示当前引擎默认配置。")
def config_show(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    console.print(_render_settings(state.repository.load_settings()))
    console.print(f"配置文件：{state.repository.locator.settings_path()}", style="dim")


@config_app.command("init", help="写入默认引擎配置文件。")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="覆盖已有配置。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    path = state.repository.locator.settings_path()
    if path.exists() and not force:
        console.print(f"配置已存在：{path}（使用 --force 覆盖）", style="yellow")
        raise typer.Exit(code=1)
    state.repository.save_settings(EngineSettings())
    console.print(f"已写入默认配置：{path}", style="green")
    console.print(yaml.safe_dump(EngineSettings().model_dump(mode="json"), sort_keys=False))


@log_app.command("list", help="列出可用的爬虫日志文件。")
def log_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    logs = list(available_spider_logs(state.repository.locator.logs_dir))
    if not logs:
        console.print("暂未生成任何爬虫日志。", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("文件名", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="查看日志的最近内容。")
def log_show(
    ctx: typer.Context,
    spider: Optional[str] = typer.Option(None, "--spider", help="爬虫名称（为空则展示全局日志）。"),
    tail: int = typer.Option(100, "--tail", min=1, help="显示最近 N 行内容。"),
) -> None:
    state = _get_state(ctx)
    base_dir = state.repository.locator.logs_dir or default_log_dir()
    path = base_dir / "spiders" / f"{spider}.log" if spider else base_dir / "crawler.log"
    lines = tail_log(path, tail)
    if not lines:
        console.print("暂无日志信息。", style="dim")
        return
    header = f"{'爬虫日志' if spider else '全局日志'} · 最近 {len(lines)} 行"
    console.print(header, style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
