"""HTTP application: routes, CORS, request logging and the server entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from typing import Any

from dotenv import find_dotenv, load_dotenv
from flask import Blueprint, Flask, Response, g, jsonify, request

from shortlink import qr, urls, users
from shortlink.access import check_resource_owner
from shortlink.models import (
    ApiError,
    CreateQrRequest,
    CreateUserRequest,
    EditUserRequest,
    QrSearchParams,
    RegenerateQrParams,
    UrlRequest,
    UrlSearchParams,
)
from shortlink.store import connect_mongo

ALLOWED_ORIGINS = ("http://localhost:5173", "http://localhost:4173")
ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE")
ALLOWED_HEADERS = ("authorization", "accept", "content-type")
CORS_MAX_AGE = 3600
BACKGROUND = "shortlink.background"
SVG_MIMETYPE = "image/svg+xml"

_log = logging.getLogger("shortlink.access")

Authenticator = Callable[[Any], "str | None"]


def health_check(store: Any) -> tuple[dict[str, Any], int]:
    """Ping the database and report the outcome with an HTTP status."""
    if store.ping():
        return {"success": True}, 200
    return {"success": False, "error": "Database connection failed"}, 500


def _json(value: Any, status: int = 200) -> Response:
    response = jsonify(value)
    response.status_code = status
    return response


def _svg(content: str) -> Response:
    return Response(content, 200, mimetype=SVG_MIMETYPE)


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def _preflight() -> Response:
    method = request.headers.get("Access-Control-Request-Method", "")
    if method.upper() not in ALLOWED_METHODS:
        raise ApiError(400, "Requested method is not allowed")
    requested = request.headers.get("Access-Control-Request-Headers", "")
    for header in filter(None, (h.strip().lower() for h in requested.split(","))):
        if header not in ALLOWED_HEADERS:
            raise ApiError(400, "Requested header is not allowed")
    response = Response(status=200)
    response.headers["Access-Control-Allow-Methods"] = ", ".join(ALLOWED_METHODS)
    response.headers["Access-Control-Allow-Headers"] = ", ".join(ALLOWED_HEADERS)
    response.headers["Access-Control-Max-Age"] = str(CORS_MAX_AGE)
    return response


def create_app(store: Any, authenticate: Authenticator) -> Flask:
    """Build the application.

    ``authenticate`` receives the incoming request and returns the caller's
    user id, or None to refuse the request with 401.
    """
    app = Flask(__name__)
    app.extensions[BACKGROUND] = ThreadPoolExecutor(
        max_workers=4, thread_name_prefix="visit-tracking"
    )
    api = Blueprint("api", __name__, url_prefix="/api")

    @app.errorhandler(ApiError)
    def _api_error(exc: ApiError) -> Response:
        if exc.body is not None:
            return _json(exc.body, exc.status)
        return Response(exc.message, exc.status, mimetype="text/plain")

    @app.before_request
    def _start() -> Response | None:
        g.started = time.perf_counter()
        origin = request.headers.get("Origin")
        if origin is None:
            return None
        if origin not in ALLOWED_ORIGINS:
            raise ApiError(400, "Origin is not allowed to make this request")
        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            return _preflight()
        return None

    @app.after_request
    def _finish(response: Response) -> Response:
        origin = request.headers.get("Origin")
        if origin in ALLOWED_ORIGINS:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.vary.add("Origin")
        elapsed_ms = (time.perf_counter() - g.get("started", time.perf_counter())) * 1000
        _log.info(
            '%s "%s %s %s" %s %s "%s" "%s" %.6f ms',
            _client_ip() or "-",
            request.method,
            request.full_path.rstrip("?"),
            request.environ.get("SERVER_PROTOCOL", "HTTP/1.1"),
            response.status_code,
            response.content_length if response.content_length is not None else "-",
            request.headers.get("Referer", "-"),
            request.headers.get("User-Agent", "-"),
            elapsed_ms,
        )
        return response

    @app.get("/r/<code>")
    def _redirect(code: str) -> Response:
        original_url = urls.resolve_redirect(store, code)
        app.extensions[BACKGROUND].submit(
            urls.record_visit,
            store,
            code,
            _client_ip(),
            request.headers.get("User-Agent"),
            request.headers.get("Referer"),
        )
        return Response(status=302, headers={"Location": original_url})

    @api.before_request
    def _authenticate() -> None:
        user_id = authenticate(request)
        if user_id is None:
            raise ApiError(401, "Unauthorized")
        g.user_id = user_id

    @api.post("/shorten")
    def _shorten() -> Response:
        body = UrlRequest.from_json(request.get_json(silent=True))
        return _json(asdict(urls.create_short_url(store, body, g.user_id)), 201)

    @api.get("/urls")
    def _list_urls() -> Response:
        params = UrlSearchParams.from_query(request.args)
        return _json([asdict(item) for item in urls.list_urls(store, params, g.user_id)])

    @api.delete("/urls/<code>")
    def _delete_url(code: str) -> Response:
        urls.delete_short_url(store, code, g.user_id)
        return Response(status=204)

    @api.get("/users/<user_id>/urls")
    def _user_urls(user_id: str) -> Response:
        check_resource_owner(g.user_id, {"user_id": user_id}, "user_id")
        params = UrlSearchParams.from_query(request.args)
        listed = urls.list_user_urls(store, user_id, params, g.user_id)
        return _json([asdict(item) for item in listed])

    @api.get("/users/<user_id>/qr")
    def _user_qr(user_id: str) -> Response:
        check_resource_owner(g.user_id, {"user_id": user_id}, "user_id")
        params = QrSearchParams.from_query(request.args)
        listed = qr.list_user_qr_codes(store, user_id, params, g.user_id)
        return _json([asdict(item) for item in listed])

    @api.get("/health/check")
    def _health() -> Response:
        body, status = health_check(store)
        return _json(body, status)

    @api.get("/qr/<code>/regenerate")
    def _regenerate(code: str) -> Response:
        params = RegenerateQrParams.from_query(request.args)
        return _svg(qr.regenerate_qr(store, code, params))

    @api.get("/qr/<code>/info")
    def _qr_info(code: str) -> Response:
        return _svg(urls.get_qr_svg(store, code, request.args.get("url_type")))

    @api.get("/analytics/<code>")
    def _analytics(code: str) -> Response:
        return _json(asdict(urls.url_analytics(store, code)))

    @api.post("/qr")
    def _direct_qr() -> Response:
        body = CreateQrRequest.from_json(request.get_json(silent=True))
        return _svg(qr.generate_direct_qr(store, body, g.user_id))

    @api.get("/qr")
    def _list_qr() -> Response:
        params = QrSearchParams.from_query(request.args)
        return _json([asdict(item) for item in qr.list_qr_codes(store, params, g.user_id)])

    @api.get("/users")
    def _list_users() -> Response:
        return _json(users.list_users(store, g.user_id))

    @api.post("/users")
    def _create_user() -> Response:
        body = CreateUserRequest.from_json(request.get_json(silent=True))
        return _json(users.create_user(store, body), 201)

    @api.get("/users/<user_id>")
    def _get_user(user_id: str) -> Response:
        return _json(users.get_user(store, user_id))

    @api.put("/users/<user_id>")
    def _edit_user(user_id: str) -> Response:
        body = EditUserRequest.from_json(request.get_json(silent=True))
        return _json(users.edit_user(store, user_id, body))

    @api.delete("/users/<user_id>")
    def _delete_user(user_id: str) -> Response:
        users.delete_user(store, user_id)
        return Response(status=204)

    app.register_blueprint(api)
    return app


def _refuse_all(_request: Any) -> None:
    """Token verification is not configured, so every API request is refused."""
    return None


def main(argv: list[str] | None = None) -> int:
    """Run the server on 127.0.0.1 at the port named by the PORT setting."""
    parser = argparse.ArgumentParser(prog="shortlink", description="Run the link shortener.")
    parser.parse_args(argv)

    load_dotenv(find_dotenv(usecwd=True))
    port_text = os.environ.get("PORT")
    if port_text is None:
        raise SystemExit("PORT not set.")
    try:
        port = int(port_text)
    except ValueError:
        raise SystemExit(f"Invalid PORT: {port_text}") from None
    if not 0 <= port <= 65535:
        raise SystemExit(f"Invalid PORT: {port_text}")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    mongodb_url = os.environ.get("MONGODB_URL")
    if mongodb_url is None:
        raise SystemExit("MONGODB_URL not set.")
    try:
        store = connect_mongo(mongodb_url)
    except ValueError as exc:
        print(f"Error connecting to the database: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    app = create_app(store, _refuse_all)
    app.run(host="127.0.0.1", port=port)
    return 0