#!/usr/bin/env python3
"""Local WebSocket target that answers the way the sync service does.

``{"msg": ..., "code": ...}`` frames are answered with ``"<msg>: <code>"``;
every other frame is echoed back unchanged.  Connections without the user
query parameter are refused with HTTP 400.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import ssl
import sys
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed


def answer(message: Any) -> Any:
    if isinstance(message, bytes):
        return message
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return message
    if isinstance(data, dict) and "msg" in data and "code" in data:
        return f"{data['msg']}: {data['code']}"
    return message


@dataclass
class EchoOptions:
    host: str = "127.0.0.1"
    port: int = 8082
    path: str = "/ws"
    delay_ms: int = 0
    reply: bool = True
    require_user: bool = True
    user_param: str = "userId"
    cert_file: Optional[str] = None
    key_file: Optional[str] = None


def create_server_ssl_context(options: EchoOptions) -> Optional[ssl.SSLContext]:
    if not options.cert_file:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(options.cert_file, options.key_file)
    return context


class EchoServer:
    def __init__(self, options: EchoOptions) -> None:
        self.options = options
        self.connections = 0
        self.messages = 0
        self.port = options.port
        self._server: Any = None

    @property
    def url(self) -> str:
        scheme = "wss" if self.options.cert_file else "ws"
        return f"{scheme}://{self.options.host}:{self.port}{self.options.path}"

    def process_request(self, connection: ServerConnection, request: Any) -> Any:
        parts = urlsplit(request.path)
        if parts.path != self.options.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        if self.options.require_user:
            params = parse_qs(parts.query)
            if not params.get(self.options.user_param):
                return connection.respond(HTTPStatus.BAD_REQUEST, "Missing userId\n")
        return None

    async def handler(self, connection: ServerConnection) -> None:
        self.connections += 1
        delay = self.options.delay_ms / 1000.0
        try:
            async for message in connection:
                self.messages += 1
                if not self.options.reply:
                    continue
                if delay > 0:
                    await asyncio.sleep(delay)
                await connection.send(answer(message))
        except ConnectionClosed as exc:
            logging.debug("client connection closed: %s", exc)

    async def start(self) -> None:
        self._server = await serve(
            self.handler,
            self.options.host,
            self.options.port,
            process_request=self.process_request,
            ssl=create_server_ssl_context(self.options),
            max_size=None,
        )
        sockets = list(self._server.sockets)
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logging.info("echo server listening on %s", self.url)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None


@contextlib.asynccontextmanager
async def running_echo_server(**kwargs: Any) -> AsyncIterator[EchoServer]:
    kwargs.setdefault("port", 0)
    server = EchoServer(EchoOptions(**kwargs))
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local echo target for syncload")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8082, help="Listen port")
    parser.add_argument("--path", default="/ws", help="WebSocket path")
    parser.add_argument("--delay-ms", dest="delay_ms", type=int, default=0, help="Artificial reply delay")
    parser.add_argument("--silent", action="store_true", help="Accept messages without replying")
    parser.add_argument("--no-require-user", dest="require_user", action="store_false",
                        help="Accept connections without the userId query parameter")
    parser.add_argument("--cert", type=Path, help="Server certificate (enables TLS)")
    parser.add_argument("--key", type=Path, help="Server private key")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser


async def serve_forever(options: EchoOptions) -> None:
    server = EchoServer(options)
    await server.start()
    try:
        await asyncio.Future()
    finally:
        await server.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    options = EchoOptions(
        host=args.host,
        port=args.port,
        path=args.path,
        delay_ms=args.delay_ms,
        reply=not args.silent,
        require_user=args.require_user,
        cert_file=str(args.cert) if args.cert else None,
        key_file=str(args.key) if args.key else None,
    )
    try:
        asyncio.run(serve_forever(options))
    except KeyboardInterrupt:
        return 130
    except OSError as exc:
        logging.error("fatal: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
