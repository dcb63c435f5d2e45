"""Run the update pipeline on many hosts concurrently."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from nixdeploy.config import NixDeployConfig
from nixdeploy.hosts import token_hostname
from nixdeploy.progress import ProgressAggregator, ProgressEvent, UpdatePhase
from nixdeploy.updater import HostUpdatePipeline, UpdateOptions, UpdateResult

logger = logging.getLogger(__name__)


class FleetCoordinator:
    """Update every selected host in parallel, one worker thread per host.

    The :attr:`progress` table is populated with a ``Pending`` entry for each
    host on construction, so a renderer may start polling it before
    :meth:`run` is called.

    Args:
        hosts: ``hostname:address`` tokens.
        options: Run options shared by all hosts.
        config: Connection settings; loaded from the default path if omitted.
        pipeline_factory: Builds the per-host pipeline; takes the token and
            a publish callback.
    """

    def __init__(
            self,
            hosts: list[str],
            options: UpdateOptions,
            config: NixDeployConfig | None = None,
            pipeline_factory: Callable[[str, Callable[[ProgressEvent], object]], HostUpdatePipeline] | None = None,
    ):
        self.hosts = list(hosts)
        self.options = options
        self.config = config or NixDeployConfig()
        self.progress = ProgressAggregator(
            [token_hostname(h) for h in self.hosts],
            queue_size=self.config.progress_queue_size,
        )
        self.pipeline_factory = pipeline_factory or self._default_pipeline

    def _default_pipeline(self, token: str, publish) -> HostUpdatePipeline:
        return HostUpdatePipeline(token, self.options, config=self.config, publish=publish)

    def _run_host(self, token: str) -> UpdateResult:
        return self.pipeline_factory(token, self.progress.publish).run()

    def run(self) -> list[UpdateResult]:
        """Update all hosts and return their results in completion order.

        An unexpected exception from one pipeline becomes a failed result
        for that host; it never stops the other hosts.
        """
        if not self.hosts:
            return []

        logger.info("Updating %d host(s): %s", len(self.hosts), ", ".join(token_hostname(h) for h in self.hosts))
        t0 = time.monotonic()
        results: list[UpdateResult] = []
        self.progress.start()
        try:
            with ThreadPoolExecutor(max_workers=len(self.hosts), thread_name_prefix="host") as executor:
                futures = {executor.submit(self._run_host, token): token for token in self.hosts}
                for future in as_completed(futures):
                    token = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        hostname = token_hostname(token)
                        logger.exception("Unexpected error updating %s", hostname)
                        self.progress.publish(
                            ProgressEvent(hostname, UpdatePhase.failed("Internal error: %s" % e))
                        )
                        result = UpdateResult(hostname, False, "Error: %s" % e)
                    results.append(result)
        finally:
            self.progress.stop()

        ok = sum(1 for r in results if r.success)
        logger.info("Fleet update done: %d/%d OK (%.1fs total)", ok, len(results), time.monotonic() - t0)
        return results


def update_fleet(
        hosts: list[str],
        options: UpdateOptions,
        config: NixDeployConfig | None = None,
) -> list[UpdateResult]:
    """Update *hosts* and return one result per host, in completion order."""
    return FleetCoordinator(hosts, options, config=config).run()
