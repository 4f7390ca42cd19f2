from __future__ import annotations

import asyncio
import datetime
import json
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote
import uuid

import pytest

from esl import ESL
from ramp_settings import Config

CALL_UUID = "1234abcd-12ab-34cd-56ef-1234567890ab"


def make_config(**overrides: Any) -> Config:
    values: Dict[str, Any] = dict(
        destination="18775437013@172.16.19.89:52173",
        audio_file="ivr-you_lose.wav",
        total_calls=1,
        interval=datetime.timedelta(milliseconds=10),
        queue_size=32,
    )
    values.update(overrides)
    return Config(**values)


def make_event(**headers: str) -> ESL.Message:
    """Build an event; keyword underscores become dashes (Unique_ID -> Unique-ID)."""
    return ESL.Message(headers={k.replace("_", "-"): v for k, v in headers.items()})


class Reply:
    def __init__(self, value: str) -> None:
        self.value = value


class FakeSwitch:
    """Stands in for a connected ESL: scripted api replies, hand-fed events."""

    def __init__(self, replies: Optional[Dict[str, List[str]]] = None) -> None:
        self.commands: List[str] = []
        self.replies = replies or {}
        self._events: asyncio.Queue[Any] = asyncio.Queue()

    async def api(self, command: str) -> Reply:
        self.commands.append(command)
        verb = command.split()[0]
        scripted = self.replies.get(verb)
        if scripted:
            body = scripted.pop(0)
            # the real client rejects anything but +OK before the caller sees it
            if not body.startswith("+OK"):
                raise ESL.NotOkay(f"'api {command}' -> {body.strip()!r}")
            return Reply(body)
        if verb == "originate":
            return Reply(f"+OK {uuid.uuid4()}\n")
        return Reply("+OK\n")

    async def originate(self, dial_string: str, app: str = "&park") -> Reply:
        return await self.api(f"originate {dial_string} {app}")

    async def uuid_broadcast(self, uuid: str, path: str, leg: str) -> Reply:
        return await self.api(f"uuid_broadcast {uuid} {path} {leg}")

    async def sched_hangup(self, uuid: str, seconds: int = 1) -> Reply:
        return await self.api(f"sched_hangup +{seconds} {uuid}")

    def feed(self, **headers: str) -> None:
        self._events.put_nowait(make_event(**headers))

    def fail(self, exc: Exception) -> None:
        self._events.put_nowait(exc)

    async def events(self, timeout: Optional[float] = 0.25):
        while True:
            item = await self._events.get()
            if isinstance(item, Exception):
                raise item
            yield item


class FakeFreeswitch:
    """Just enough of mod_event_socket to drive the real ESL client over a socket.

    With ``behave=True`` it plays the switch side of a call: an originate is
    answered, a broadcast plays to completion and a scheduled hangup destroys
    the channel, each reported with the events the call needs.
    ``api_delay`` holds every api reply back, the way originate does while
    the callee is ringing.
    """

    def __init__(
        self,
        password: str = "ClueCon",
        api_handler: Optional[Callable[[str], str]] = None,
        behave: bool = False,
        api_delay: float = 0.0,
    ) -> None:
        self.password = password
        self.api_handler = api_handler
        self.behave = behave
        self.api_delay = api_delay
        self.received: List[str] = []
        self.writer: Optional[asyncio.StreamWriter] = None
        self.server: Optional[asyncio.AbstractServer] = None
        self.port = 0

    async def start(self) -> int:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self.port

    async def stop(self) -> None:
        if self.writer is not None:
            self.writer.close()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writer = writer
        writer.write(b"Content-Type: auth/request\n\n")
        await writer.drain()
        try:
            while True:
                raw = await reader.readuntil(b"\n\n")
                command = raw.decode().strip()
                self.received.append(command)
                if command.startswith("auth "):
                    if command[5:] == self.password:
                        self.reply("+OK accepted")
                    else:
                        self.reply("-ERR invalid")
                        await writer.drain()
                        writer.close()
                        return
                elif command.startswith("api "):
                    api_command = command[4:]
                    body = self.api_reply(api_command)
                    if self.api_delay:
                        await asyncio.sleep(self.api_delay)
                    self.api_response(body)
                    if self.behave and body.startswith("+OK"):
                        self.play_along(api_command, body)
                elif command == "exit":
                    self.reply("+OK bye")
                    writer.write(b"Content-Type: text/disconnect-notice\nContent-Length: 0\n\n")
                    await writer.drain()
                    writer.close()
                    return
                else:
                    self.reply("+OK")
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            return

    def api_reply(self, api_command: str) -> str:
        if self.api_handler is not None:
            return self.api_handler(api_command)
        if api_command.startswith("originate "):
            return f"+OK {uuid.uuid4()}\n"
        return "+OK\n"

    def play_along(self, api_command: str, body: str) -> None:
        words = api_command.split()
        if words[0] == "originate":
            call_uuid = body.split()[1]
            self.send_event({"Event-Name": "CHANNEL_PROGRESS", "Unique-ID": call_uuid, "Answer-State": "ringing"})
            self.send_event({"Event-Name": "CHANNEL_ANSWER", "Unique-ID": call_uuid, "Answer-State": "answered"})
        elif words[0] == "uuid_broadcast":
            self.send_event({"Event-Name": "PLAYBACK_START", "Unique-ID": words[1]})
            self.send_event({"Event-Name": "PLAYBACK_STOP", "Unique-ID": words[1]})
        elif words[0] == "sched_hangup":
            call_uuid = words[2]
            self.send_event({"Event-Name": "CHANNEL_HANGUP", "Unique-ID": call_uuid, "Channel-State": "CS_HANGUP"})
            self.send_event({"Event-Name": "CHANNEL_DESTROY", "Unique-ID": call_uuid, "Channel-State": "CS_DESTROY"})

    def reply(self, text: str) -> None:
        assert self.writer is not None
        self.writer.write(f"Content-Type: command/reply\nReply-Text: {text}\n\n".encode())

    def api_response(self, body: str) -> None:
        assert self.writer is not None
        data = body.encode()
        self.writer.write(f"Content-Type: api/response\nContent-Length: {len(data)}\n\n".encode() + data)

    def send_event(self, headers: Dict[str, str]) -> None:
        assert self.writer is not None
        data = json.dumps(headers).encode()
        self.writer.write(f"Content-Type: text/event-json\nContent-Length: {len(data)}\n\n".encode() + data)

    def send_plain_event(self, headers: Dict[str, str]) -> None:
        assert self.writer is not None
        data = "".join(f"{k}: {quote(v)}\n" for k, v in headers.items()).encode() + b"\n"
        self.writer.write(f"Content-Type: text/event-plain\nContent-Length: {len(data)}\n\n".encode() + data)

    async def hang_up(self) -> None:
        assert self.writer is not None
        await self.writer.drain()
        self.writer.close()


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def switch() -> FakeSwitch:
    return FakeSwitch()
