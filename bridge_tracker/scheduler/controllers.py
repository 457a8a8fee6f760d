"""
Orchestration modes over BridgeIndexer + ProgressTracker.

* IncrementalBatchController: one bounded step per call (plus a continuous loop)
* HistoricalSyncController: checkpoint → tip, abortable, retries failed ranges
* PartitionWorker / partition_ranges: disjoint block ranges, one progress row each
* MaintenanceScheduler: periodic re-scan of the most recent blocks

The checkpoint (``last_indexed_block``) is the last fully scanned block and
only moves forward after a sub-range has been fetched, decoded and saved.
"""
import asyncio
import math
import time
import logging

from bridge_tracker.scheduler.state import SchedulerState
from bridge_tracker.sources.bridge_pipeline.config.settings import (
    BLOCKS_PER_QUERY,
    DFK_CHAIN_GENESIS,
    HISTORICAL_BATCH_SIZE,
    HISTORICAL_RETRY_DELAY,
    INCREMENTAL_BATCH_SIZE,
    MAIN_INDEXER_NAME,
    MAINTENANCE_INTERVAL_SECONDS,
    MAINTENANCE_LOOKBACK_BLOCKS,
)
from bridge_tracker.sources.bridge_pipeline.evm.blocks import walk_block_ranges
from bridge_tracker.storage.db_utils import utcnow
from bridge_tracker.storage.persistence import count_unpriced_events
from bridge_tracker.storage.progress import ProgressTracker
from bridge_tracker.utils.types import Partition

log = logging.getLogger(__name__)


class BatchIncompleteError(RuntimeError):
    """Some sub-range, log or row of a batch has to be handled again."""

    def __init__(self, from_block: int, to_block: int, result):
        self.from_block = from_block
        self.to_block = to_block
        self.result = result
        super().__init__(
            f"blocks {from_block}-{to_block} incomplete: "
            f"{len(result.failed_ranges)} failed ranges, {result.unresolved} unresolved logs, "
            f"{result.failed} unsaved events"
        )


def _elapsed_ms(started: float) -> int:
    return int((time.time() - started) * 1000)


def partition_ranges(genesis: int, tip: int, workers: int) -> list[Partition]:
    """Split [genesis, tip] into at most ``workers`` contiguous, non-overlapping ranges."""
    if workers < 1:
        raise ValueError("workers must be >= 1")
    if tip < genesis:
        return []
    size = math.ceil((tip - genesis + 1) / workers)
    parts = []
    for worker_id in range(workers):
        start = genesis + worker_id * size
        if start > tip:
            break
        parts.append(Partition(worker_id, start, min(start + size - 1, tip)))
    return parts


def worker_indexer_name(base_name: str, worker_id: int) -> str:
    return f"{base_name}_w{worker_id}"


class _IndexingController:
    def __init__(
        self,
        indexer,
        progress: ProgressTracker,
        name: str = MAIN_INDEXER_NAME,
        genesis_block: int = DFK_CHAIN_GENESIS,
        sub_batch_size: int = BLOCKS_PER_QUERY,
        sleep=asyncio.sleep,
    ):
        self.indexer = indexer
        self.progress = progress
        self.name = name
        self.genesis_block = genesis_block
        self.sub_batch_size = sub_batch_size
        self._sleep = sleep
        self.state = SchedulerState(name)

    def stop(self) -> bool:
        return self.state.request_stop()

    def status(self) -> dict:
        row = self.progress.get(self.name)
        return {
            "name": self.name,
            "state": self.state.state.value,
            "status": row.status if row else None,
            "last_indexed_block": row.last_indexed_block if row else None,
            "target_block": row.target_block if row else None,
            "total_events_indexed": row.total_events_indexed if row else 0,
            "last_error": row.last_error if row else None,
        }

    def _latest_block(self) -> int:
        return self.indexer.fetcher.get_latest_block()

    async def _index_window(self, start: int, end: int) -> tuple[int, int]:
        """Scan [start, end] in provider-sized steps, checkpointing after each one.

        ``index_range`` is synchronous; the loop yields to other tasks only
        between sub-batches.
        """
        found = inserted = 0
        for sub_from, sub_to in walk_block_ranges(start, end, self.sub_batch_size):
            result = self.indexer.index_range(sub_from, sub_to)
            if not result.complete:
                raise BatchIncompleteError(sub_from, sub_to, result)
            found += result.events_found
            inserted += result.inserted

            row = self.progress.get(self.name)
            self.progress.update(
                self.name,
                last_indexed_block=sub_to,
                total_events_indexed=row.total_events_indexed + result.inserted,
            )
            await asyncio.sleep(0)
        return found, inserted

    def _record_error(self, error: Exception) -> None:
        try:
            self.progress.update(self.name, status="error", last_error=str(error)[:2000])
        except Exception:
            log.exception(f"[{self.name}] could not record error state")


class IncrementalBatchController(_IndexingController):
    """One bounded indexing step per call, resuming from the checkpoint."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.loop_state = SchedulerState(f"{self.name}:loop")

    def stop(self) -> bool:
        stopped_loop = self.loop_state.request_stop()
        return self.state.request_stop() or stopped_loop

    async def run_batch(self, batch_size: int = INCREMENTAL_BATCH_SIZE) -> dict:
        if not self.state.try_start():
            log.info(f"[{self.name}] batch already running, skipping")
            return {"status": "already_running"}

        started = time.time()
        try:
            row = self.progress.init(self.name, self.genesis_block)
            latest = self._latest_block()
            last = row.last_indexed_block

            if last >= latest:
                self.progress.update(self.name, status="complete", target_block=latest)
                return {"status": "complete", "last_indexed_block": last, "latest_block": latest}

            start = last + 1
            end = min(last + batch_size, latest)
            self.progress.update(self.name, status="running", target_block=latest)
            log.info(f"[{self.name}] batch {start}-{end} (tip {latest})")

            found, inserted = await self._index_window(start, end)

            runtime_ms = _elapsed_ms(started)
            row = self.progress.get(self.name)
            batch_count = row.total_batch_count + 1
            total_runtime = row.total_batch_runtime_ms + runtime_ms
            self.progress.update(
                self.name,
                status="complete" if end >= latest else "idle",
                last_batch_runtime_ms=runtime_ms,
                total_batch_count=batch_count,
                total_batch_runtime_ms=total_runtime,
                events_needing_prices=count_unpriced_events(self.indexer.session_factory),
                last_error=None,
            )
            return {
                "status": "success",
                "start_block": start,
                "end_block": end,
                "latest_block": latest,
                "blocks_remaining": latest - end,
                "events_found": found,
                "events_inserted": inserted,
                "runtime_ms": runtime_ms,
                "avg_runtime_ms": total_runtime // batch_count,
                "total_batch_count": batch_count,
            }
        except Exception as e:
            log.error(f"[{self.name}] batch failed: {e}", exc_info=True)
            self._record_error(e)
            return {"status": "error", "error": str(e)}
        finally:
            self.state.finish()

    async def run_forever(
        self,
        batch_size: int = INCREMENTAL_BATCH_SIZE,
        delay: float = 2.0,
        max_batches: int | None = None,
        idle_multiplier: int = 5,
        busy_delay: float = 10.0,
        error_delay: float = 30.0,
    ) -> dict:
        """Keep calling run_batch until stop() or ``max_batches``.

        After three consecutive ``complete`` results the loop waits
        ``delay * idle_multiplier`` between polls.
        """
        if not self.loop_state.try_start():
            return {"status": "already_running"}

        batches = 0
        consecutive_complete = 0
        result: dict = {}
        try:
            while not self.loop_state.should_stop:
                if max_batches is not None and batches >= max_batches:
                    break
                result = await self.run_batch(batch_size)
                batches += 1

                status = result["status"]
                if status == "complete":
                    consecutive_complete += 1
                    wait = delay * idle_multiplier if consecutive_complete >= 3 else delay
                elif status == "already_running":
                    wait = busy_delay
                elif status == "error":
                    consecutive_complete = 0
                    wait = error_delay
                else:
                    consecutive_complete = 0
                    wait = delay

                if self.loop_state.should_stop or (max_batches is not None and batches >= max_batches):
                    break
                await self._sleep(wait)
        finally:
            self.loop_state.finish()

        log.info(f"[{self.name}] continuous sync stopped after {batches} batches")
        return {"status": "stopped", "batches": batches, "last_result": result}


class HistoricalSyncController(_IndexingController):
    """Checkpoint → tip in fixed windows; abortable between windows.

    A failed window is retried from the same start block after
    ``retry_delay`` seconds, so the checkpoint never skips past it.
    """

    range_end: int | None = None

    async def run(
        self,
        batch_size: int = HISTORICAL_BATCH_SIZE,
        retry_delay: float = HISTORICAL_RETRY_DELAY,
        target_block: int | None = None,
        max_retries: int | None = None,
    ) -> dict:
        if not self.state.try_start():
            return {"status": "already_running"}

        total_events = total_inserted = 0
        try:
            row = self.progress.init(self.name, self.genesis_block, range_end=self.range_end)
            target = target_block if target_block is not None else self._latest_block()
            self.progress.update(
                self.name, status="running", started_at=utcnow(), target_block=target, last_error=None,
            )
            current = row.last_indexed_block
            log.info(f"[{self.name}] historical sync {current + 1} → {target}")

            failures = 0
            while current < target:
                if self.state.should_stop:
                    log.info(f"[{self.name}] aborted at block {current}")
                    break

                start = current + 1
                end = min(current + batch_size, target)
                window_started = time.time()
                try:
                    found, inserted = await self._index_window(start, end)
                except Exception as e:
                    failures += 1
                    log.error(f"[{self.name}] window {start}-{end} failed (attempt {failures}): {e}")
                    self._record_error(e)
                    if max_retries is not None and failures > max_retries:
                        return {
                            "status": "error",
                            "error": str(e),
                            "total_events": total_events,
                            "total_inserted": total_inserted,
                            "last_block": current,
                        }
                    await self._sleep(retry_delay)
                    continue

                failures = 0
                current = end
                total_events += found
                total_inserted += inserted
                runtime_ms = _elapsed_ms(window_started)
                row = self.progress.get(self.name)
                self.progress.update(
                    self.name,
                    status="running",
                    last_error=None,
                    last_batch_runtime_ms=runtime_ms,
                    total_batch_count=row.total_batch_count + 1,
                    total_batch_runtime_ms=row.total_batch_runtime_ms + runtime_ms,
                )

            final_status = "complete" if current >= target else "idle"
            self.progress.update(
                self.name,
                status=final_status,
                completed_at=utcnow() if final_status == "complete" else None,
                events_needing_prices=count_unpriced_events(self.indexer.session_factory),
            )
            log.info(f"[{self.name}] {final_status}: {total_events} events, {total_inserted} new, at {current}")
            return {
                "status": final_status,
                "total_events": total_events,
                "total_inserted": total_inserted,
                "last_block": current,
            }
        finally:
            self.state.finish()


class PartitionWorker(HistoricalSyncController):
    """Historical sync confined to one partition, under its own progress row."""

    def __init__(self, indexer, progress: ProgressTracker, partition: Partition,
                 base_name: str = MAIN_INDEXER_NAME, **kwargs):
        super().__init__(
            indexer,
            progress,
            name=worker_indexer_name(base_name, partition.worker_id),
            genesis_block=partition.start_block,
            **kwargs,
        )
        self.partition = partition
        self.range_end = partition.end_block

    async def run(self, batch_size: int = HISTORICAL_BATCH_SIZE,
                  retry_delay: float = HISTORICAL_RETRY_DELAY, max_retries: int | None = None) -> dict:
        result = await super().run(
            batch_size=batch_size,
            retry_delay=retry_delay,
            target_block=self.partition.end_block,
            max_retries=max_retries,
        )
        result["worker_id"] = self.partition.worker_id
        return result


class PartitionedSync:
    """Plans worker partitions over [genesis, tip] and runs them in-process.

    Indexing calls block on web3 and the database, so in-process workers
    interleave only between sub-batches and never overlap their I/O. Real
    parallelism comes from ``dispatch_partitioned_sync``, which hands each
    partition to its own Celery worker process.
    """

    def __init__(self, indexer, progress: ProgressTracker, base_name: str = MAIN_INDEXER_NAME,
                 genesis_block: int = DFK_CHAIN_GENESIS, **worker_kwargs):
        self.indexer = indexer
        self.progress = progress
        self.base_name = base_name
        self.genesis_block = genesis_block
        self.worker_kwargs = worker_kwargs
        self.workers: dict[int, PartitionWorker] = {}

    def plan(self, workers: int, tip: int | None = None) -> list[Partition]:
        if tip is None:
            tip = self.indexer.fetcher.get_latest_block()
        return partition_ranges(self.genesis_block, tip, workers)

    def worker(self, partition: Partition) -> PartitionWorker:
        w = PartitionWorker(self.indexer, self.progress, partition, base_name=self.base_name, **self.worker_kwargs)
        self.workers[partition.worker_id] = w
        return w

    async def run_all(self, workers: int, tip: int | None = None, **run_kwargs) -> list[dict]:
        partitions = self.plan(workers, tip)
        log.info(f"[{self.base_name}] running {len(partitions)} partitions in-process")
        return list(await asyncio.gather(*(self.worker(p).run(**run_kwargs) for p in partitions)))

    def stop(self) -> None:
        for w in self.workers.values():
            w.stop()

    def status(self) -> list[dict]:
        return [w.status() for _, w in sorted(self.workers.items())]


class MaintenanceScheduler:
    """Periodically re-scan the newest ``lookback`` blocks; duplicates are skipped on insert."""

    def __init__(self, indexer, lookback: int = MAINTENANCE_LOOKBACK_BLOCKS,
                 interval: float = MAINTENANCE_INTERVAL_SECONDS, sub_batch_size: int = BLOCKS_PER_QUERY):
        self.indexer = indexer
        self.lookback = lookback
        self.interval = interval
        self.sub_batch_size = sub_batch_size
        self.state = SchedulerState("maintenance")
        self.runs = 0
        self.last_result: dict | None = None
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()

    async def run_once(self, lookback: int | None = None) -> dict:
        lookback = self.lookback if lookback is None else lookback
        latest = self.indexer.fetcher.get_latest_block()
        start = max(0, latest - lookback)
        log.info(f"[maintenance] scanning recent blocks {start}-{latest}")

        total_events = total_inserted = 0
        failed = []
        for sub_from, sub_to in walk_block_ranges(start, latest, self.sub_batch_size):
            try:
                result = self.indexer.index_range(sub_from, sub_to)
            except Exception as e:
                log.error(f"[maintenance] blocks {sub_from}-{sub_to} failed: {e}")
                failed.append((sub_from, sub_to))
                continue
            total_events += result.events_found
            total_inserted += result.inserted
            failed.extend(tuple(r) for r in result.failed_ranges)
            await asyncio.sleep(0)

        if total_inserted:
            log.info(f"[maintenance] {total_events} events, {total_inserted} new")
        self.runs += 1
        self.last_result = {
            "status": "success",
            "start_block": start,
            "end_block": latest,
            "total_events": total_events,
            "total_inserted": total_inserted,
            "failed_ranges": failed,
        }
        return self.last_result

    async def _loop(self) -> None:
        try:
            while not self.state.should_stop:
                try:
                    await self.run_once()
                except Exception:
                    log.exception("[maintenance] run failed")
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._wake.clear()
            self.state.finish()

    def start(self) -> bool:
        """Schedule the loop on the running event loop; False if already started."""
        if not self.state.try_start():
            log.info("[maintenance] already running")
            return False
        log.info(f"[maintenance] starting (interval {self.interval}s, lookback {self.lookback})")
        self._task = asyncio.get_running_loop().create_task(self._loop())
        return True

    def stop(self) -> bool:
        stopped = self.state.request_stop()
        if stopped:
            self._wake.set()
        return stopped

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task

    def status(self) -> dict:
        return {
            "state": self.state.state.value,
            "runs": self.runs,
            "interval": self.interval,
            "lookback": self.lookback,
            "last_result": self.last_result,
        }
