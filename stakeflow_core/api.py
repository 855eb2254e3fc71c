"""
REST / HTTP API for a StakeFlow engine.

Built on ``aiohttp``; a thin translation layer with no business logic.

Endpoints
---------
GET  /health                        Liveness
GET  /pool/{pool}                   Pool state and summary
GET  /pool/{pool}/stake/{owner}     Position and claimable rewards
GET  /pool/{pool}/audit             Invariant audit of the pool
GET  /balance/{asset}/{owner}       Token balance
POST /pool                          Initialize a pool (caller = admin)
POST /pool/{pool}/fund              Deposit reward funding (admin)
POST /pool/{pool}/stake             Stake           body: {"amount": int}
POST /pool/{pool}/unstake           Unstake         body: {"amount": int}
POST /pool/{pool}/claim             Claim rewards
POST /admin/{pool}/time_offset      Clock warp      body: {"offset_seconds": int}

Amounts are integer base units.  Integers above 2**53 are returned as
strings so JavaScript clients keep full precision.

Security
--------
- POST requests must be signed: ``X-Public-Key`` (hex, uncompressed
  secp256k1), ``X-Nonce`` (milliseconds since the epoch) and
  ``X-Signature`` (hex r||s over SHA-256 of method, path, nonce and raw
  body, see ``wallet.signing_payload``).  The caller's identity is the
  address derived from the public key.
- A nonce must lie within the configured window of server time and be
  greater than the last one accepted from the same caller, so a captured
  request cannot be replayed.
- Per-IP token-bucket rate limiter (configurable RPM).
- Request body size cap.

Usage:
    api = APIServer(engine, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from stakeflow_core.errors import (
    RecordNotFound,
    StakingError,
    StoreConflict,
    Unauthorized,
)
from stakeflow_core.invariants import InvariantChecker
from stakeflow_core.wallet import (
    NONCE_HEADER,
    PUBLIC_KEY_HEADER,
    SIGNATURE_HEADER,
    derive_address,
    signing_payload,
    verify_signature,
)

if TYPE_CHECKING:
    from stakeflow_core.config import APIConfig
    from stakeflow_core.staking import StakingEngine

logger = logging.getLogger("stakeflow_api")

_JS_SAFE_INT = 2 ** 53


# ═══════════════════════════════════════════════════════════════════
#  Input / output helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, accepting ints and integer strings only."""
    if isinstance(value, bool):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _js_safe(obj: Any) -> Any:
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int) and abs(obj) >= _JS_SAFE_INT:
        return str(obj)
    if isinstance(obj, dict):
        return {k: _js_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_js_safe(v) for v in obj]
    return obj


def _json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(_js_safe(data), status=status)


_ERROR_STATUS: dict[type, int] = {
    RecordNotFound: 404,
    Unauthorized: 403,
    StoreConflict: 409,
}


def _error_response(exc: StakingError) -> web.Response:
    status = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400,
    )
    return _json_response({"error": exc.code, "message": str(exc)}, status=status)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_signature_middleware(required: bool = True, window_seconds: int = 300):
    """
    aiohttp middleware that authenticates POST requests.

    On success the derived caller address is stored in
    ``request["caller"]``.  With ``required=False`` (local development)
    an unsigned body may name its caller in a ``"caller"`` field.
    """
    # caller address -> highest nonce accepted
    last_nonce: dict[str, int] = {}
    window_ms = window_seconds * 1000

    @web.middleware
    async def signature_middleware(request: web.Request, handler):
        if request.method != "POST":
            return await handler(request)
        body = await request.read()
        pub_hex = request.headers.get(PUBLIC_KEY_HEADER, "")
        sig_hex = request.headers.get(SIGNATURE_HEADER, "")
        if pub_hex and sig_hex:
            try:
                public_key = bytes.fromhex(pub_hex)
                signature = bytes.fromhex(sig_hex)
                nonce = int(request.headers.get(NONCE_HEADER, ""))
            except ValueError:
                raise web.HTTPUnauthorized(text="Malformed signature headers")
            if abs(time.time_ns() // 1_000_000 - nonce) > window_ms:
                raise web.HTTPUnauthorized(text="Nonce outside the accepted window")
            payload = signing_payload(request.method, request.path, nonce, body)
            if not verify_signature(public_key, payload, signature):
                raise web.HTTPUnauthorized(text="Invalid signature")
            caller = derive_address(public_key)
            if nonce <= last_nonce.get(caller, 0):
                raise web.HTTPUnauthorized(text="Nonce already used")
            last_nonce[caller] = nonce
            request["caller"] = caller
        elif required:
            raise web.HTTPUnauthorized(text="Signed request required")
        else:
            try:
                caller = json.loads(body or b"{}").get("caller", "")
            except (ValueError, AttributeError):
                caller = ""
            if not caller:
                raise web.HTTPUnauthorized(text="caller required")
            request["caller"] = caller
        return await handler(request)

    return signature_middleware


class APIServer:
    """Thin aiohttp wrapper around a ``StakingEngine``."""

    def __init__(
        self,
        engine: StakingEngine,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.engine = engine
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        require_signatures = True
        window = 300
        cfg = self._api_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            require_signatures = cfg.require_signatures
            window = cfg.signature_window_seconds
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        if not require_signatures:
            if self.engine.config.allow_time_warp:
                raise ValueError(
                    "require_signatures = false cannot be combined with allow_time_warp"
                )
            logger.warning("Unsigned requests accepted; callers are taken from the body")
        middlewares.append(_make_signature_middleware(require_signatures, window))

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/pool/{pool}", self._pool_info)
        app.router.add_get("/pool/{pool}/stake/{owner}", self._position_info)
        app.router.add_get("/pool/{pool}/audit", self._pool_audit)
        app.router.add_get("/balance/{asset}/{owner}", self._balance)
        app.router.add_post("/pool", self._initialize_pool)
        app.router.add_post("/pool/{pool}/fund", self._fund)
        app.router.add_post("/pool/{pool}/stake", self._stake)
        app.router.add_post("/pool/{pool}/unstake", self._unstake)
        app.router.add_post("/pool/{pool}/claim", self._claim)
        app.router.add_post("/admin/{pool}/time_offset", self._time_offset)

    @staticmethod
    async def _body(request: web.Request) -> dict[str, Any]:
        raw = await request.read()
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON body must be an object")
        return body

    # ── query handlers ───────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return _json_response({"status": "ok", "time": self.engine.clock.now()})

    async def _pool_info(self, request: web.Request) -> web.Response:
        try:
            return _json_response(self.engine.pool_summary(request.match_info["pool"]))
        except StakingError as exc:
            return _error_response(exc)

    async def _position_info(self, request: web.Request) -> web.Response:
        try:
            return _json_response(self.engine.position_summary(
                request.match_info["pool"], request.match_info["owner"],
            ))
        except StakingError as exc:
            return _error_response(exc)

    async def _pool_audit(self, request: web.Request) -> web.Response:
        try:
            passed, errors = InvariantChecker(self.engine).verify(request.match_info["pool"])
        except StakingError as exc:
            return _error_response(exc)
        return _json_response({"passed": passed, "errors": errors})

    async def _balance(self, request: web.Request) -> web.Response:
        asset = request.match_info["asset"]
        owner = request.match_info["owner"]
        if not self.engine.tokens.has_asset(asset):
            raise web.HTTPNotFound(text="Unknown asset")
        return _json_response({
            "asset": asset,
            "owner": owner,
            "balance": self.engine.tokens.balance(asset, owner),
        })

    # ── operation handlers ───────────────────────────────────────

    async def _initialize_pool(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        asset = body.get("asset_id", "")
        if not asset:
            raise web.HTTPBadRequest(text="asset_id required")
        apy_bps = _safe_int(body.get("apy_bps", 0), "apy_bps")
        lockup = _safe_int(body.get("lockup_seconds", 0), "lockup_seconds")
        variant = str(body.get("variant", "default"))
        try:
            pool = self.engine.initialize_pool(
                request["caller"], asset, apy_bps, lockup, variant=variant,
            )
        except StakingError as exc:
            return _error_response(exc)
        data = pool.to_dict()
        data.pop("kind")
        return _json_response(data, status=201)

    async def _fund(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        amount = _safe_int(body.get("amount", 0), "amount")
        return self._run(
            self.engine.fund_rewards, request["caller"], request.match_info["pool"], amount,
        )

    async def _stake(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        amount = _safe_int(body.get("amount", 0), "amount")
        return self._run(
            self.engine.stake, request["caller"], request.match_info["pool"], amount,
        )

    async def _unstake(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        amount = _safe_int(body.get("amount", 0), "amount")
        return self._run(
            self.engine.unstake, request["caller"], request.match_info["pool"], amount,
        )

    async def _claim(self, request: web.Request) -> web.Response:
        return self._run(self.engine.claim, request["caller"], request.match_info["pool"])

    async def _time_offset(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        offset = _safe_int(body.get("offset_seconds", 0), "offset_seconds")
        try:
            pool = self.engine.set_time_offset(
                request["caller"], request.match_info["pool"], offset,
            )
        except StakingError as exc:
            return _error_response(exc)
        return _json_response({"pool": pool.address, "time_offset": pool.time_offset})

    @staticmethod
    def _run(handler, *args) -> web.Response:
        try:
            receipt = handler(*args)
        except StakingError as exc:
            logger.info(f"{handler.__name__} rejected: {exc.code}")
            return _error_response(exc)
        return _json_response(receipt.to_dict())
