"""One A2S exchange against one host: challenge handshake, split reassembly, timeout."""
import asyncio
import logging
from typing import Optional, Union

from a2sapi.protocol import (
    NO_DATA_ERRORS,
    S2C_CHALLENGE,
    NoData,
    PacketAssembler,
    Parsed,
    QueryError,
    RequestKind,
    decode,
    describe_reply,
    encode_request,
    parse_challenge,
    response_type,
    split_host,
)

logger = logging.getLogger(__name__)

# Seconds for the whole exchange (both round trips)
DEFAULT_TIMEOUT = 3.0


class _QueryProtocol(asyncio.DatagramProtocol):
    """Queues every datagram (or socket error) the endpoint receives."""

    def __init__(self) -> None:
        self.packets: "asyncio.Queue[Union[bytes, Exception]]" = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.packets.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.packets.put_nowait(exc)


class _Exchange:
    """State of one request/response exchange; `answered` records whether the challenge round got a reply."""

    def __init__(self, kind: RequestKind, host: str, transport: asyncio.DatagramTransport, protocol: _QueryProtocol) -> None:
        self.kind = kind
        self.host = host
        self.transport = transport
        self.protocol = protocol
        self.assembler = PacketAssembler()
        self.answered = kind is RequestKind.INFO

    def send(self, challenge: Optional[bytes] = None) -> None:
        self.transport.sendto(encode_request(self.kind, challenge))

    async def receive(self) -> bytes:
        """Wait for the next complete reply, reassembling split packets."""
        while True:
            item = await self.protocol.packets.get()
            if isinstance(item, Exception):
                raise NoData(f"socket error: {item}", self.host)
            logger.debug("%s %s <- %s", self.host, self.kind.value, describe_reply(item))
            reply = self.assembler.feed(item)
            if reply is not None:
                response_type(reply)
                return reply

    async def run(self) -> Parsed:
        if self.kind is RequestKind.INFO:
            self.send()
            reply = await self.receive()
            if _is_challenge(reply):
                # Newer Source servers gate A2S_INFO behind a challenge too
                self.send(parse_challenge(reply))
                reply = await self.receive()
            return decode(self.kind, reply)

        self.send()
        reply = await self.receive()
        self.answered = True
        if _is_challenge(reply):
            self.send(parse_challenge(reply))
            reply = await self.receive()
        # else: host answered the challenge request with the full reply
        return decode(self.kind, reply)

    def timeout_error(self, timeout: float) -> NoData:
        if not self.answered:
            return NoData(f"no reply to {self.kind.value} challenge within {timeout}s", self.host)
        return NO_DATA_ERRORS[self.kind](f"no {self.kind.value} reply within {timeout}s", self.host)


def _is_challenge(reply: bytes) -> bool:
    return response_type(reply) == S2C_CHALLENGE


async def query(kind: RequestKind, host: str, timeout: float = DEFAULT_TIMEOUT) -> Parsed:
    """
    Run one info/players/rules exchange against host ('ip:port').
    The timeout bounds the whole exchange. Raises NoInfo/NoPlayers/NoRules when the
    final reply never comes, NoData when the host stays silent, MalformedPacket on bad bytes.
    """
    kind = RequestKind(kind)
    try:
        addr = split_host(host)
    except ValueError as e:
        raise NoData(str(e), host) from e
    loop = asyncio.get_running_loop()
    try:
        transport, protocol = await loop.create_datagram_endpoint(_QueryProtocol, remote_addr=addr)
    except (OSError, OverflowError) as e:
        raise NoData(f"cannot open socket: {e}", host) from e
    exchange = _Exchange(kind, host, transport, protocol)
    try:
        return await asyncio.wait_for(exchange.run(), timeout)
    except asyncio.TimeoutError:
        raise exchange.timeout_error(timeout) from None
    except QueryError as e:
        if e.host is None:
            e.host = host
        raise
    finally:
        transport.close()

