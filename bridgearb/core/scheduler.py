"""Round-robin scanning across bridge assets."""

import asyncio
from typing import Dict, List, Optional, Set, Any
from loguru import logger

from ..config import Config
from .scanner import PathScanner
from .types import PathProfitEstimate, ScanResult


class MultiBridgeScheduler:
    """Scans one bridge asset per interval, cycling through all of them.

    Keeps the latest result per bridge and a best-of-all-bridges view.
    Scans of the same bridge never overlap.
    """

    def __init__(self, config: Config, scanner: PathScanner,
                 venues: Optional[List[str]] = None, assets: Optional[List[str]] = None,
                 bridges: Optional[List[str]] = None):
        self.config = config
        self.scanner = scanner
        self.venues = venues or list(config.exchanges.enabled)
        self.assets = assets or list(config.scan.currencies)
        self.bridges = bridges or list(config.scan.bridge_assets)
        self.interval_s = config.scan.rotation_interval_s

        self.results: Dict[str, ScanResult] = {}
        self.errors: Dict[str, str] = {}
        self.current_index = 0
        self.cycles = 0
        self._in_flight: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("Multi-bridge scheduler already running")
            return
        self._running = True
        self.cycles = 0
        self._task = asyncio.create_task(self._rotation_loop())
        logger.info(f"Multi-bridge scheduler started: {self.bridges} every {self.interval_s:.0f}s")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info(f"Multi-bridge scheduler stopped after {self.cycles} cycles")

    async def _rotation_loop(self):
        while self._running:
            bridge = self.bridges[self.current_index]
            await self.scan_bridge(bridge)

            self.current_index = (self.current_index + 1) % len(self.bridges)
            if self.current_index == 0:
                self.cycles += 1
                self._log_cycle_summary()

            await asyncio.sleep(self.interval_s)

    async def scan_bridge(self, bridge: str, amount: Optional[float] = None) -> Optional[ScanResult]:
        """Scan one bridge. Returns None if a scan for it is already running or it failed."""
        if bridge in self._in_flight:
            logger.warning(f"{bridge} scan already in progress, skipping")
            return None

        self._in_flight.add(bridge)
        try:
            result = await asyncio.to_thread(
                self.scanner.scan, self.venues, self.assets, bridge, amount
            )
            self.results[bridge] = result
            self.errors.pop(bridge, None)
            return result
        except Exception as e:
            logger.error(f"{bridge} scan failed: {e}")
            self.errors[bridge] = str(e)
            return None
        finally:
            self._in_flight.discard(bridge)

    def is_scanning(self, bridge: str) -> bool:
        return bridge in self._in_flight

    def best_overall(self) -> Optional[PathProfitEstimate]:
        """Most profitable viable path across every bridge's latest scan."""
        candidates = [r.best for r in self.results.values() if r.best is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.profit_percent)

    def _log_cycle_summary(self):
        best = self.best_overall()
        summary = ", ".join(
            f"{bridge}: {r.best.profit_percent:+.2f}%" if r.best else f"{bridge}: n/a"
            for bridge, r in self.results.items()
        )
        logger.info(f"Bridge cycle {self.cycles} complete [{summary}]")
        if best:
            logger.info(f"Best across bridges: {best.path.id} via {best.path.bridge_asset} "
                        f"{best.profit_percent:+.3f}%")

    def get_status(self) -> Dict[str, Any]:
        best = self.best_overall()
        return {
            "running": self._running,
            "bridges": self.bridges,
            "current_bridge": self.bridges[self.current_index],
            "cycles": self.cycles,
            "interval_s": self.interval_s,
            "results": {
                bridge: {
                    "best": r.best.to_dict() if r.best else None,
                    "evaluated_count": r.evaluated_count,
                    "skipped_count": r.skipped_count,
                    "total_possible": r.total_possible,
                    "scanned_at_ms": r.scanned_at_ms,
                }
                for bridge, r in self.results.items()
            },
            "errors": dict(self.errors),
            "best_overall": best.to_dict() if best else None,
        }
