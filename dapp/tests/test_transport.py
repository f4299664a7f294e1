import asyncio
import json
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from dapp.exceptions import StreamError
from dapp.schemas import IndexerQuery
from dapp.transport import SseLiveTransport, iter_sse_events


async def lines_of(*chunks: bytes):
    for chunk in chunks:
        yield chunk


async def collect(transport, query):
    opened = []
    frames = []
    try:
        async for rows in transport.stream(query, lambda: opened.append(True)):
            frames.append(rows)
    except StreamError as exc:
        return opened, frames, exc
    return opened, frames, None


async def with_server(handler, scenario):
    app = web.Application()
    app.router.add_get("/live", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        return await scenario(str(server.make_url("/")).rstrip("/"))
    finally:
        await server.close()


class SseParsingTests(unittest.TestCase):
    def test_events_are_split_on_blank_lines(self) -> None:
        async def scenario():
            lines = lines_of(
                b"event: snapshot\n",
                b"data: [1,\n",
                b"data: 2]\n",
                b"\n",
                b": keepalive\n",
                b"\n",
                b"data: plain\n",
                b"\n",
            )
            return [event async for event in iter_sse_events(lines)]

        events = asyncio.run(scenario())

        self.assertEqual(events, [("snapshot", "[1,\n2]"), ("message", "plain")])


class SseLiveTransportTests(unittest.TestCase):
    def test_streams_snapshots_until_server_closes(self) -> None:
        received_queries = []

        async def handler(request):
            received_queries.append(json.loads(request.query["query"]))
            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            await resp.write(b'event: snapshot\ndata: [{"player": "a"}]\n\n')
            await resp.write(b": keepalive\n\n")
            await resp.write(b"event: snapshot\ndata: []\n\n")
            await resp.write_eof()
            return resp

        async def scenario(base_url):
            return await collect(SseLiveTransport(base_url), IndexerQuery.round_players(4))

        opened, frames, error = asyncio.run(with_server(handler, scenario))

        self.assertEqual(opened, [True])
        self.assertEqual(frames, [[{"player": "a"}], []])
        self.assertIsInstance(error, StreamError)
        self.assertEqual(received_queries[0]["table"], "roundPlayer")
        self.assertEqual(received_queries[0]["where"], {"roundNumber": "4"})

    def test_rejected_subscription_raises_before_open(self) -> None:
        async def handler(request):
            return web.json_response({"error": "unknown column"}, status=400)

        async def scenario(base_url):
            return await collect(SseLiveTransport(base_url), IndexerQuery.recent_rounds(12))

        opened, frames, error = asyncio.run(with_server(handler, scenario))

        self.assertEqual(opened, [])
        self.assertEqual(frames, [])
        self.assertIn("HTTP 400", error.message)

    def test_error_frame_raises(self) -> None:
        async def handler(request):
            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            await resp.write(b'event: error\ndata: {"error": "live query failed"}\n\n')
            await resp.write_eof()
            return resp

        async def scenario(base_url):
            return await collect(SseLiveTransport(base_url), IndexerQuery.recent_rounds(12))

        opened, frames, error = asyncio.run(with_server(handler, scenario))

        self.assertEqual(opened, [True])
        self.assertIn("live query failed", error.message)

    def test_connection_refused_is_stream_error(self) -> None:
        async def scenario():
            return await collect(SseLiveTransport("http://127.0.0.1:9", connect_timeout=1), IndexerQuery.recent_rounds(1))

        opened, frames, error = asyncio.run(scenario())

        self.assertEqual(opened, [])
        self.assertIsInstance(error, StreamError)


if __name__ == "__main__":
    unittest.main()
