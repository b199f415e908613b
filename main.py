from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from sitecrawl.config import SchedulerConfig, load_proxies, load_site_configs
from sitecrawl.errors import ConfigError
from sitecrawl.extractors import RegexExtractor
from sitecrawl.models import TaskOptions
from sitecrawl.notifier import JsonlNotifier, Notifier
from sitecrawl.proxy import ProxyRotator
from sitecrawl.retry import summarize_errors
from sitecrawl.scheduler import TaskScheduler
from sitecrawl.supervisor import AntiDetectionSupervisor

DEFAULT_SITES_PATH = "sites.json"

logger = logging.getLogger("sitecrawl.cli")


def run_search(
    sites_path: str,
    query: str,
    site_ids: Optional[List[str]],
    proxies_path: Optional[str],
    events_path: Optional[str],
    max_concurrent: int,
    timeout: float,
    max_results: Optional[int],
    check_proxies: bool = False,
) -> int:
    sites = load_site_configs(sites_path)
    targets = site_ids or [s.site_id for s in sites.values() if s.active]

    rotator = ProxyRotator(load_proxies(proxies_path) if proxies_path else ())
    if check_proxies and len(rotator):
        rotator.check_health()
    supervisor = AntiDetectionSupervisor(proxies=rotator)
    notifier: Optional[Notifier] = JsonlNotifier(events_path) if events_path else None

    scheduler = TaskScheduler(
        sites,
        RegexExtractor(),
        supervisor=supervisor,
        notifier=notifier,
        config=SchedulerConfig(max_concurrent_tasks=max_concurrent, task_timeout=timeout),
    )
    scheduler.start()
    try:
        task_id = scheduler.submit(query, targets, TaskOptions(max_results=max_results))
        task = scheduler.wait(task_id)
    finally:
        scheduler.stop(wait=False)

    if task is None:
        return 1

    for result in task.results:
        print(json.dumps(result, ensure_ascii=False))

    summary = summarize_errors(task.errors)
    print(
        f"\nDONE: task={task.id} status={task.status.value} "
        f"sites={task.progress.completed}/{task.progress.total} failed={task.progress.failed} "
        f"results={len(task.results)} errors={summary.total} duration_ms={task.duration_ms}"
    )
    if summary.most_common is not None:
        print(f"most common error: {summary.most_common.value} {summary.by_type}")
        for hint in summary.suggestions:
            print(f"  - {hint}")
    return 0 if task.progress.completed > 0 else 2


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Search several sites concurrently and print the results")
    parser.add_argument("--sites", default=DEFAULT_SITES_PATH, help="Path to site rules (JSON)")
    parser.add_argument("--query", required=True, help="Search keyword")
    parser.add_argument("--site", action="append", dest="site_ids", help="Site id to search (repeatable; default all)")
    parser.add_argument("--proxies", default=None, help="Proxy list file, one host:port or URL per line")
    parser.add_argument("--events", default=None, help="Write task events to this JSONL file")
    parser.add_argument("--check-proxies", action="store_true", help="Health-check every proxy before searching")

    parser.add_argument("--max-concurrent", type=int, default=3, help="Max tasks running at once")
    parser.add_argument("--timeout", type=float, default=300.0, help="Task timeout in seconds")
    parser.add_argument("--max-results", type=int, default=None, help="Stop after this many results")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return run_search(
            sites_path=args.sites,
            query=args.query,
            site_ids=args.site_ids,
            proxies_path=args.proxies,
            events_path=args.events,
            max_concurrent=args.max_concurrent,
            timeout=args.timeout,
            max_results=args.max_results,
            check_proxies=args.check_proxies,
        )
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
