"""HTTP surface for scanning, executing and inspecting the engine."""

import asyncio
from typing import List, Optional
from aiohttp import web
from loguru import logger
from pydantic import BaseModel, Field
from pydantic import ValidationError as RequestValidationError

from .errors import ArbError, BusyError, ValidationError
from .core.types import ArbitragePath
from .core.validator import DepositCredentials, ValidationOptions


class ScanRequest(BaseModel):
    venues: Optional[List[str]] = None
    assets: Optional[List[str]] = None
    bridge_asset: Optional[str] = None
    min_profit_percent: Optional[float] = None
    max_amount: Optional[float] = Field(default=None, gt=0)
    limit: Optional[int] = Field(default=None, gt=0)


class ExecuteRequest(BaseModel):
    source_venue: str
    dest_venue: str
    source_asset: str
    dest_asset: Optional[str] = None
    bridge_asset: Optional[str] = None
    amount: Optional[float] = Field(default=None, gt=0)
    address: Optional[str] = None
    tag: Optional[str] = None
    confirmed: bool = False
    min_profit_percent: Optional[float] = None


class TradeAmountRequest(BaseModel):
    venue: str
    asset: str
    available_balance: Optional[float] = Field(default=None, ge=0)


def _error(status: int, message: str, code: str, **extra) -> web.Response:
    return web.json_response({"error": message, "code": code, **extra}, status=status)


async def _read_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError(f"Body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Body must be a JSON object")
    return body


class ApiServer:
    """aiohttp application bound to a running bot."""

    def __init__(self, bot):
        self.bot = bot
        self.config = bot.config
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/scan", self.handle_scan)
        app.router.add_post("/execute", self.handle_execute)
        app.router.add_post("/calculate-trade-amount", self.handle_calculate_trade_amount)
        app.router.add_get("/active-transfers", self.handle_active_transfers)
        app.router.add_get("/history", self.handle_history)
        app.router.add_get("/price-cache-status", self.handle_price_cache_status)
        app.router.add_get("/bridges", self.handle_bridges)
        return app

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """Start serving. Returns False if the socket could not be bound."""
        host = host or self.config.server.host
        port = self.config.server.port if port is None else port
        try:
            self._runner = web.AppRunner(self.create_app())
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, host, port)
            await self._site.start()
            logger.info(f"🌐 API server listening on http://{host}:{port}")
            return True
        except OSError as e:
            logger.error(f"Failed to start API server: {e}")
            return False

    async def stop(self):
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("API server stopped")

    async def handle_scan(self, request: web.Request) -> web.Response:
        try:
            body = ScanRequest.model_validate(await _read_body(request))
        except (RequestValidationError, ValidationError) as e:
            return _error(400, str(e), ValidationError.code)

        scan = self.config.scan
        bridge = (body.bridge_asset or scan.default_bridge).upper()
        venues = body.venues or list(self.bot.exchanges)
        unknown = [v for v in venues if v not in self.bot.exchanges]
        if unknown:
            return _error(400, f"Venues not configured: {', '.join(unknown)}", ValidationError.code)
        assets = [a.upper() for a in (body.assets or scan.currencies)]
        min_profit = (body.min_profit_percent if body.min_profit_percent is not None
                      else scan.min_profit_percent)

        result = await asyncio.to_thread(
            self.bot.scanner.scan, venues, assets, bridge, body.max_amount
        )
        return web.json_response(result.to_dict(min_profit_percent=min_profit, limit=body.limit))

    async def handle_execute(self, request: web.Request) -> web.Response:
        try:
            body = ExecuteRequest.model_validate(await _read_body(request))
        except (RequestValidationError, ValidationError) as e:
            return _error(400, str(e), ValidationError.code)

        bridge = (body.bridge_asset or self.config.scan.default_bridge).upper()
        source_asset = body.source_asset.upper()
        dest_asset = (body.dest_asset or body.source_asset).upper()
        path = ArbitragePath.build(body.source_venue, body.dest_venue,
                                   source_asset, dest_asset, bridge)

        if body.address:
            credentials = DepositCredentials(address=body.address, tag=body.tag)
        else:
            credentials = self.bot.deposit_credentials(body.dest_venue, bridge)

        options = ValidationOptions.from_config(
            self.config,
            confirmed=body.confirmed,
            min_profit_percent=body.min_profit_percent,
        )

        amount = body.amount
        if amount is None:
            try:
                sizing = await self.bot.size_trade(path.source_venue, source_asset)
            except ValidationError as e:
                return _error(400, e.message, e.code)
            except ArbError as e:
                return _error(500, e.message, e.code)
            if not sizing.can_trade:
                return _error(400, f"Nothing to trade on {path.source_venue}: "
                                   f"{sizing.binding_constraint.value} limit is zero",
                              ValidationError.code, sizing=sizing.to_dict())
            amount = sizing.recommended_amount

        opportunity = self.bot.scanner.estimate(path, amount)

        try:
            result = await self.bot.orchestrator.execute(opportunity, amount,
                                                         credentials, options)
        except BusyError as e:
            return _error(409, e.message, e.code, venue=e.key, holder=e.holder)
        except ValidationError as e:
            return _error(400, e.message, e.code)
        except ArbError as e:
            return _error(500, e.message, e.code, fund_loss_risk=e.fund_loss_risk)

        return web.json_response(result.to_dict())

    async def handle_calculate_trade_amount(self, request: web.Request) -> web.Response:
        try:
            body = TradeAmountRequest.model_validate(await _read_body(request))
        except (RequestValidationError, ValidationError) as e:
            return _error(400, str(e), ValidationError.code)

        try:
            sizing = await self.bot.size_trade(body.venue, body.asset.upper(),
                                               body.available_balance)
        except ValidationError as e:
            return _error(400, e.message, e.code)
        except ArbError as e:
            return _error(500, e.message, e.code)

        return web.json_response({"venue": body.venue, "asset": body.asset.upper(),
                                  **sizing.to_dict()})

    async def handle_active_transfers(self, request: web.Request) -> web.Response:
        orchestrator = self.bot.orchestrator
        venues = list(self.bot.exchanges)
        return web.json_response({
            "active": orchestrator.active_sagas(),
            "admission": self.bot.admission.snapshot(),
            "venues": self.bot.queue.venue_states(self.bot.admission, venues),
        })

    async def handle_history(self, request: web.Request) -> web.Response:
        raw_limit = request.query.get("limit", "20")
        try:
            limit = int(raw_limit)
        except ValueError:
            return _error(400, f"Invalid limit: {raw_limit}", ValidationError.code)
        if limit <= 0:
            return _error(400, "limit must be positive", ValidationError.code)

        if self.bot.history_store and self.bot.history_store.connection:
            executions = await self.bot.history_store.recent(limit)
        else:
            executions = self.bot.orchestrator.history(limit)
        return web.json_response({"executions": executions, "count": len(executions)})

    async def handle_price_cache_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.bot.price_cache.get_status())

    async def handle_bridges(self, request: web.Request) -> web.Response:
        return web.json_response(self.bot.scheduler.get_status())
