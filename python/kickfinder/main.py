from __future__ import annotations

import atexit
import logging
import os
import re
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Dict

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings, env_int
from kickfinder.errors import Aborted, ScrapeError, UnknownSource, friendly_message
from kickfinder.runner import EngineLoop
from kickfinder.service import PriceService
from kickfinder.sources.stockx import SOURCE_ID as STOCKX_ID

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("kickfinder")

START_TIME = time.time()

MIN_QUERY_LENGTH = 2
MAX_QUERY_LENGTH = env_int("MAX_QUERY_LENGTH", 120, min_value=10, max_value=300)
RATE_LIMIT_PER_MINUTE = env_int("RATE_LIMIT_PER_MINUTE", 30, min_value=1, max_value=120)
RATE_LIMIT_WINDOW_SEC = 60
REQUEST_TIMEOUT_SEC = env_int("REQUEST_TIMEOUT_SEC", 180, min_value=10, max_value=900)
STOCKX_URL_PATTERN = re.compile(r"^https://(www\.)?stockx\.com/[A-Za-z0-9\-_/]+")

settings = Settings.from_env()
engine = EngineLoop()
service = PriceService.from_settings(settings)

app = Flask(__name__)
CORS(app, origins=settings.cors_origins, supports_credentials=True)

_rate_limit_lock = threading.Lock()
_rate_limit_hits: Dict[str, deque[float]] = defaultdict(deque)


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def is_rate_limited(ip: str) -> bool:
    if RATE_LIMIT_PER_MINUTE <= 0:
        return False
    now = time.time()
    with _rate_limit_lock:
        window = _rate_limit_hits[ip]
        while window and (now - window[0]) > RATE_LIMIT_WINDOW_SEC:
            window.popleft()
        if len(window) >= RATE_LIMIT_PER_MINUTE:
            return True
        window.append(now)
    return False


def normalize_query(raw: str) -> str:
    normalized = re.sub(r"\s+", " ", raw).strip()
    return normalized[:MAX_QUERY_LENGTH]


def error_response(status: int, error: str, message: str = ""):
    return jsonify({"error": error, "message": message or error}), status


def rate_limit_response():
    return error_response(429, "Rate limit exceeded", "Too many requests. Try again shortly.")


def run_engine(coro_factory):
    """Runs one service call on the engine loop under the request deadline."""
    token = CancellationToken.create(timeout=REQUEST_TIMEOUT_SEC)
    try:
        return engine.run(coro_factory(token), timeout=REQUEST_TIMEOUT_SEC + 5)
    except FutureTimeout:
        token.signal()
        raise Aborted("request deadline")


@app.after_request
def add_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
    return response


@app.errorhandler(UnknownSource)
def handle_unknown_source(exc: UnknownSource):
    return error_response(404, "Unknown source", f"Unknown source: {exc}")


@app.errorhandler(ScrapeError)
def handle_scrape_error(exc: ScrapeError):
    if isinstance(exc, Aborted):
        logger.warning("request aborted: %s", exc)
        return error_response(500, "Request timed out", "The lookup took too long. Please try again.")
    logger.warning("scrape failed: %s", exc)
    return error_response(500, "Scrape failed", friendly_message(exc))


@app.errorhandler(Exception)
def handle_unexpected(exc: Exception):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("request failed")
    return error_response(500, "Internal error", friendly_message(exc))


@app.route("/api/health")
def health():
    return {
        "status": "ok",
        "uptime_sec": int(time.time() - START_TIME),
        **service.status(),
    }


@app.route("/api/search")
def api_search():
    query = normalize_query(request.args.get("q") or "")
    if len(query) < MIN_QUERY_LENGTH:
        return error_response(400, "Invalid query", f"Query must be at least {MIN_QUERY_LENGTH} characters")
    if is_rate_limited(client_ip()):
        return rate_limit_response()

    products = run_engine(lambda token: service.search(query, token))
    return jsonify({
        "products": [product.to_dict() for product in products],
        "meta": {"query": query, "total": len(products)},
    })


@app.route("/api/trending")
def api_trending():
    if is_rate_limited(client_ip()):
        return rate_limit_response()
    return jsonify(run_engine(service.trending))


@app.route("/api/product/all-prices")
def api_all_prices():
    url = (request.args.get("url") or "").strip()
    if not STOCKX_URL_PATTERN.match(url):
        return error_response(400, "Invalid URL", "A StockX product URL is required")
    if is_rate_limited(client_ip()):
        return rate_limit_response()

    token = CancellationToken.create()
    events = service.product_all_prices(url, token)

    def event_stream():
        for event in engine.iterate(events, token):
            yield event.to_sse()

    return Response(
        event_stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.route("/api/prices/<source_id>")
def api_price_by_source(source_id: str):
    if source_id == STOCKX_ID:
        identifier = (request.args.get("url") or "").strip()
        if not STOCKX_URL_PATTERN.match(identifier):
            return error_response(400, "Invalid URL", "StockX lookups need a product url")
    else:
        identifier = normalize_query(request.args.get("sku") or "")
        if len(identifier) < MIN_QUERY_LENGTH:
            return error_response(400, "Invalid SKU", "A style id (sku) is required")
    if is_rate_limited(client_ip()):
        return rate_limit_response()

    result = run_engine(lambda token: service.price_by_source(source_id, identifier, token))
    return jsonify({"source": source_id, "result": result.to_dict() if result else None})


@app.route("/api/compare")
def api_compare():
    sku = normalize_query(request.args.get("sku") or "")
    if len(sku) < MIN_QUERY_LENGTH:
        return error_response(400, "Invalid SKU", "A style id (sku) is required")
    if is_rate_limited(client_ip()):
        return rate_limit_response()

    groups = run_engine(lambda token: service.compare(sku, token))
    return jsonify({"sku": sku, "groups": [group.to_dict() for group in groups]})


@app.route("/robots.txt")
def robots():
    lines = [
        "User-agent: *",
        "Disallow: /api/",
    ]
    return Response("\n".join(lines), mimetype="text/plain")


@atexit.register
def shutdown() -> None:
    engine.stop(service.close())


def main() -> None:
    host = os.getenv("APP_HOST", "0.0.0.0")
    port = env_int("PORT", 5000, min_value=1, max_value=65535)
    debug = os.getenv("APP_DEBUG", "0") == "1"
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
