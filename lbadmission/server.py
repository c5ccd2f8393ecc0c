"""HTTPS server exposing the admission webhooks."""

from __future__ import annotations

import argparse
import json
import logging
import ssl
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional, Union

from lbadmission.admitter import Admitter, NotFoundError
from lbadmission.review import (
    AdmissionReview,
    mutate,
    to_admission_response,
    validate,
)
from lbadmission.validate import parse_duration

logger = logging.getLogger(__name__)

JSON_MIME = "application/json"
DEFAULT_PORT = 443
DEFAULT_WEBHOOK_TIMEOUT = 10.0


class UnknownRouteError(LookupError):
    """Raised when a request is addressed to a path with no webhook."""


class WebhookServer:
    """Routes admission reviews to an admitter and serves them over TLS."""

    def __init__(self, admitter: Admitter, cert_file: str, key_file: str) -> None:
        self.admitter = admitter
        self.cert_file = cert_file
        self.key_file = key_file
        a = admitter
        self._routes: dict[str, Callable[[AdmissionReview], AdmissionReview]] = {
            "/mutate-load-balancer": lambda r: mutate(r, a.mutate_lb),
            "/mutate-load-balancer-driver": lambda r: mutate(r, a.mutate_driver),
            "/mutate-backend-broup": lambda r: mutate(r, a.mutate_backend_group),
            "/validate-load-balancer": lambda r: validate(
                r,
                a.validate_load_balancer_create,
                a.validate_load_balancer_update,
                a.validate_load_balancer_delete,
            ),
            "/validate-load-balancer-driver": lambda r: validate(
                r,
                a.validate_driver_create,
                a.validate_driver_update,
                a.validate_driver_delete,
            ),
            "/validate-backend-group": lambda r: validate(
                r,
                a.validate_backend_group_create,
                a.validate_backend_group_update,
                a.validate_backend_group_delete,
            ),
        }

    @property
    def paths(self) -> list[str]:
        return list(self._routes)

    def handle(self, path: str, body: Union[bytes, str]) -> dict:
        """Answer one admission review posted to ``path``."""
        route = self._routes.get(path.split("?", 1)[0])
        if route is None:
            raise UnknownRouteError(path)
        try:
            review = AdmissionReview.from_dict(json.loads(body))
            if review.request is None:
                raise ValueError("request is missing")
        except (ValueError, TypeError, AttributeError) as err:
            response = to_admission_response(f"decode AdmissionReview failed: {err}")
            return AdmissionReview(response=response).to_dict()
        return route(review).to_dict()

    def _build_http_server(self, host: str, port: int) -> ThreadingHTTPServer:
        app = self

        class _Handler(BaseHTTPRequestHandler):
            def _reply(self, status: int, payload: Optional[dict] = None) -> None:
                data = json.dumps(payload).encode() if payload is not None else b""
                self.send_response(status)
                if payload is not None:
                    self.send_header("Content-Type", JSON_MIME)
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                try:
                    self.wfile.write(data)
                except OSError as err:
                    logger.error("send admissionWebhook response failed: %s, ar: %s", err, payload)

            def do_POST(self) -> None:  # noqa: N802
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length)
                if self.headers.get("Content-Type") and self.headers.get_content_type() != JSON_MIME:
                    self._reply(415)
                    return
                try:
                    payload = app.handle(self.path, body)
                except UnknownRouteError:
                    self._reply(404)
                    return
                self._reply(200, payload)

            def do_GET(self) -> None:  # noqa: N802
                self._reply(405)

            def log_message(self, fmt: str, *args) -> None:
                logger.debug(fmt, *args)

        return ThreadingHTTPServer((host, port), _Handler)

    def serve(self, host: str = "", port: int = DEFAULT_PORT) -> None:
        """Serve the webhooks over TLS until interrupted."""
        httpd = self._build_http_server(host, port)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_file, self.key_file)
        httpd.socket = context.wrap_socket(httpd.socket, server_side=True)
        with httpd:
            httpd.serve_forever()


class _SnapshotLister:
    """Looks objects up in a fixed list loaded at start-up."""

    def __init__(self, objects: list[dict]) -> None:
        self._objects = list(objects)

    def get(self, namespace: str, name: str) -> dict:
        for obj in self._objects:
            meta = obj.get("metadata") or {}
            if meta.get("namespace", "") == namespace and meta.get("name", "") == name:
                return obj
        raise NotFoundError(f'"{name}" not found')

    def list(self) -> list[dict]:
        return list(self._objects)


class _HttpInvoker:
    """Posts webhook requests as JSON to the driver's URL."""

    def _call(self, driver: dict, hook: str, request: dict) -> dict:
        spec = driver.get("spec") or {}
        timeout = DEFAULT_WEBHOOK_TIMEOUT
        for wh in spec.get("webhooks") or []:
            if wh.get("name") == hook and wh.get("timeout"):
                timeout = parse_duration(wh["timeout"])
        url = (spec.get("url") or "").rstrip("/") + "/" + hook
        req = urllib.request.Request(
            url,
            data=json.dumps(request).encode(),
            headers={"Content-Type": JSON_MIME},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=timeout) as rsp:
            result = json.loads(rsp.read() or b"{}")
        if not isinstance(result, dict):
            raise ValueError(f"webhook {hook} returned a non-object response")
        return result

    def call_validate_load_balancer(self, driver: dict, request: dict) -> dict:
        return self._call(driver, "validateLoadBalancer", request)

    def call_validate_backend(self, driver: dict, request: dict) -> dict:
        return self._call(driver, "validateBackend", request)


def _load_snapshot(path: Optional[str]) -> dict:
    if not path:
        return {}
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError("snapshot must be a JSON object")
    return data


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="lbadmission", description="Serve admission webhooks.")
    parser.add_argument("--tls-cert-file", required=True)
    parser.add_argument("--tls-key-file", required=True)
    parser.add_argument("--host", default="")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--snapshot", help="JSON file with loadBalancers, loadBalancerDrivers "
                                           "and backendRecords lists")
    args = parser.parse_args(argv)

    snapshot = _load_snapshot(args.snapshot)
    admitter = Admitter(
        _SnapshotLister(snapshot.get("loadBalancers") or []),
        _SnapshotLister(snapshot.get("loadBalancerDrivers") or []),
        _SnapshotLister(snapshot.get("backendRecords") or []),
        _HttpInvoker(),
    )
    server = WebhookServer(admitter, args.tls_cert_file, args.tls_key_file)
    try:
        server.serve(args.host, args.port)
    except KeyboardInterrupt:
        pass
    return 0