"""HTTP surface for the gap monitor and the signed Kalshi proxy."""

import json
from typing import Awaitable, Callable, Optional
from aiohttp import web
from loguru import logger

from data.errors import CredentialError, UpstreamFetchError
from logic.gap_monitor import ArbitrageMonitor
from services.kalshi_client import KalshiClient


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Map domain errors to JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except UpstreamFetchError as e:
        logger.error(f"{request.method} {request.path} upstream failure: {e}")
        return web.json_response(e.to_dict(), status=502)
    except CredentialError as e:
        logger.error(f"{request.method} {request.path} credential failure: {e}")
        return web.json_response({'error': 'credentials_unavailable', 'detail': str(e)}, status=503)
    except ValueError as e:
        return web.json_response({'error': 'invalid_request', 'detail': str(e)}, status=400)


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValueError(f"Body is not valid JSON: {e.msg}") from e
    if not isinstance(body, dict):
        raise ValueError("Body must be a JSON object")
    return body


def _as_int(value, name: str) -> int:
    """Accept 1, 1.0 or "1"; reject booleans, fractions and anything else."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value)
    raise ValueError(f"{name} must be an integer")


class GapServer:
    """aiohttp server exposing gap status, prediction actions and the Kalshi proxy."""

    PORTFOLIO_ENDPOINTS = ('balance', 'positions', 'orders')

    def __init__(self,
                 monitor: ArbitrageMonitor,
                 kalshi: Optional[KalshiClient] = None,
                 host: str = "0.0.0.0",
                 port: int = 8080):
        self.monitor = monitor
        self.kalshi = kalshi or monitor.kalshi
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get('/health', self._handle_health)
        app.router.add_get('/api/arbitrage', self._handle_gap_status)
        app.router.add_post('/api/arbitrage', self._handle_gap_action)
        app.router.add_get('/api/kalshi', self._handle_portfolio)
        app.router.add_post('/api/kalshi', self._handle_order)
        app.router.add_delete('/api/kalshi', self._handle_cancel)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"GapWatch API running at http://localhost:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # =========================================================================
    # Monitor routes
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'clock_offset_seconds': self.kalshi.calibrator.offset_seconds,
            'state_file': str(self.monitor.store.path),
            'auth': self.kalshi.has_credential,
        })

    async def _handle_gap_status(self, request: web.Request) -> web.Response:
        """Current spot/implied gap plus prediction history."""
        status = await self.monitor.poll(record=False)
        return web.json_response(status.to_dict())

    async def _handle_gap_action(self, request: web.Request) -> web.Response:
        """log_prediction, resolve_prediction or record_gap."""
        body = await _json_body(request)
        action = body.get('action')

        if action == 'log_prediction':
            if body.get('predicted_prob') is None:
                raise ValueError("predicted_prob is required")
            state = await self.monitor.log_prediction(
                market_ticker=body.get('market_ticker') or '',
                predicted_prob=body['predicted_prob'],
                notes=body.get('notes') or '',
            )
            return web.json_response({'success': True, 'state': state.model_dump(mode='json')})

        if action == 'resolve_prediction':
            state, resolved = await self.monitor.resolve_prediction(
                market_ticker=body.get('market_ticker') or '',
                outcome=_as_int(body.get('outcome'), 'outcome'),
            )
            return web.json_response({
                'success': True,
                'resolved': resolved,
                'state': state.model_dump(mode='json'),
            })

        if action == 'record_gap':
            status = await self.monitor.poll(record=True)
            return web.json_response({'success': True, **status.to_dict()})

        raise ValueError(f"Unknown action {action!r}")

    # =========================================================================
    # Kalshi proxy routes (signed)
    # =========================================================================

    async def _handle_portfolio(self, request: web.Request) -> web.Response:
        endpoint = request.query.get('endpoint', 'balance')
        if endpoint not in self.PORTFOLIO_ENDPOINTS:
            raise ValueError(f"Invalid endpoint {endpoint!r}")

        if endpoint == 'balance':
            data = await self.kalshi.get_balance()
        elif endpoint == 'positions':
            data = await self.kalshi.get_positions()
        else:
            data = await self.kalshi.get_orders(status=request.query.get('status'))
        return web.json_response(data)

    async def _handle_order(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        if body.get('action') != 'order':
            raise ValueError(f"Unknown action {body.get('action')!r}")

        ticker = body.get('ticker')
        side = body.get('side')
        if not ticker or not side:
            raise ValueError("Missing required fields: ticker, side, count")

        order_type = body.get('type', 'limit')
        price = body.get('price')
        result = await self.kalshi.place_order(
            ticker=ticker,
            side=side,
            count=_as_int(body.get('count'), 'count'),
            price=_as_int(price, 'price') if price is not None else None,
            order_type=order_type,
        )
        logger.info(f"Order submitted | {ticker} {side} x{body.get('count')} ({order_type})")
        return web.json_response({'success': 'order' in result, **result})

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        order_id = request.query.get('orderId')
        if not order_id:
            raise ValueError("Order ID required")
        return web.json_response(await self.kalshi.cancel_order(order_id))
