"""
Source/Steam server query (A2S) wire format over UDP.
Based on https://developer.valvesoftware.com/wiki/Server_queries

Encoding summary:
- Every request and every single-packet reply starts with the marker FF FF FF FF, then a type byte.
- Requests: A2S_INFO = 0x54 "Source Engine Query\\0" [+ challenge], A2S_PLAYER = 0x55 + challenge,
  A2S_RULES = 0x56 + challenge. Challenge FF FF FF FF asks the host for a token.
- Replies: S2A_INFO = 0x49, S2A_PLAYER = 0x44, S2A_RULES = 0x45, S2C_CHALLENGE = 0x41 + token(4).
- Split replies: FE FF FF FF + id(i32, high bit = bz2) + total(u8) + number(u8) + size(u16),
  then payload. The first fragment of a compressed reply also carries
  decompressed size(u32) + crc32(u32). Joined payloads start with FF FF FF FF again.
- Integers are little-endian; strings are null-terminated.
"""
import bz2
import enum
import logging
import struct
import zlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

SINGLE_PACKET = b"\xff\xff\xff\xff"
SPLIT_PACKET = b"\xfe\xff\xff\xff"
CHALLENGE_REQUEST = b"\xff\xff\xff\xff"
MARKER_LENGTH = 4
CHALLENGE_LENGTH = 4

A2S_INFO = 0x54
A2S_PLAYER = 0x55
A2S_RULES = 0x56
A2S_INFO_PAYLOAD = b"Source Engine Query\x00"

S2A_INFO = 0x49
S2A_PLAYER = 0x44
S2A_RULES = 0x45
S2C_CHALLENGE = 0x41

# Extra data flag (EDF) bits closing an S2A_INFO reply
EDF_PORT = 0x80
EDF_STEAM_ID = 0x10
EDF_SPECTATOR = 0x40
EDF_KEYWORDS = 0x20
EDF_GAME_ID = 0x01

# Split header after the marker: id(4) + total(1) + number(1) + size(2)
SPLIT_HEADER = struct.Struct("<iBBH")
COMPRESSED_HEADER = struct.Struct("<II")
COMPRESSED_FLAG = 0x80000000
# Largest payload a host puts in one fragment (Source default)
MAX_PACKET_SIZE = 1248
# Fragments per reply are a single byte; cap buffered replies per exchange
MAX_PENDING_RESPONSES = 8

SERVER_TYPES = {"d": "dedicated", "l": "listen", "p": "proxy"}
ENVIRONMENTS = {"l": "Linux", "w": "Windows", "m": "Mac", "o": "Mac"}


class RequestKind(str, enum.Enum):
    INFO = "info"
    PLAYERS = "players"
    RULES = "rules"


REQUEST_TYPES = {
    RequestKind.INFO: A2S_INFO,
    RequestKind.PLAYERS: A2S_PLAYER,
    RequestKind.RULES: A2S_RULES,
}
RESPONSE_TYPES = {
    RequestKind.INFO: S2A_INFO,
    RequestKind.PLAYERS: S2A_PLAYER,
    RequestKind.RULES: S2A_RULES,
}


class QueryError(Exception):
    """Base for every failure of a single-host exchange."""

    def __init__(self, message: str, host: Optional[str] = None) -> None:
        super().__init__(message)
        self.host = host


class MalformedPacket(QueryError):
    """The host sent bytes that violate the wire format."""


class NoData(QueryError):
    """The host did not answer within the exchange timeout."""


class NoInfo(NoData):
    """No S2A_INFO reply (timeout or unrecognized header)."""


class NoPlayers(NoData):
    """Host answered the challenge but never sent its player list."""


class NoRules(NoData):
    """Host answered the challenge but never sent its rules."""


NO_DATA_ERRORS = {
    RequestKind.INFO: NoInfo,
    RequestKind.PLAYERS: NoPlayers,
    RequestKind.RULES: NoRules,
}


@dataclass(frozen=True)
class ExtraData:
    """Fields selected by the EDF bitmask; None when the bit is not set."""
    port: Optional[int] = None
    steam_id: Optional[int] = None
    spectator_port: Optional[int] = None
    spectator_name: Optional[str] = None
    keywords: Optional[str] = None
    game_id: Optional[int] = None

    def flags(self) -> int:
        edf = 0
        if self.port is not None:
            edf |= EDF_PORT
        if self.steam_id is not None:
            edf |= EDF_STEAM_ID
        if self.spectator_port is not None or self.spectator_name is not None:
            edf |= EDF_SPECTATOR
        if self.keywords is not None:
            edf |= EDF_KEYWORDS
        if self.game_id is not None:
            edf |= EDF_GAME_ID
        return edf


@dataclass(frozen=True)
class ServerInfo:
    protocol: int
    name: str
    map: str
    folder: str
    game: str
    app_id: int
    players: int
    max_players: int
    bots: int
    server_type: str  # dedicated, listen, proxy
    environment: str  # Linux, Windows, Mac
    visibility: int
    vac: int
    version: str
    extra: Optional[ExtraData] = None

    @property
    def game_port(self) -> Optional[int]:
        if self.extra is None:
            return None
        return self.extra.port

    def to_dict(self) -> Dict[str, object]:
        extra = self.extra or ExtraData()
        return {
            "protocol": self.protocol,
            "name": self.name,
            "map": self.map,
            "folder": self.folder,
            "game": self.game,
            "app_id": self.app_id,
            "players": self.players,
            "max_players": self.max_players,
            "bots": self.bots,
            "server_type": self.server_type,
            "environment": self.environment,
            "visibility": self.visibility,
            "vac": self.vac,
            "version": self.version,
            "extra": {
                "port": extra.port,
                "steam_id": extra.steam_id,
                "spectator_port": extra.spectator_port,
                "spectator_name": extra.spectator_name,
                "keywords": extra.keywords,
                "game_id": extra.game_id,
            } if self.extra is not None else None,
        }


@dataclass(frozen=True)
class PlayerInfo:
    index: int
    name: str
    score: int
    duration: float  # seconds connected

    def to_dict(self) -> Dict[str, object]:
        return {"index": self.index, "name": self.name, "score": self.score, "duration": self.duration}


Parsed = Union[ServerInfo, List[PlayerInfo], Dict[str, str]]


class PacketReader:
    """Cursor over a reply; every short read raises MalformedPacket."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = data
        self.offset = offset

    def remaining(self) -> int:
        return len(self.data) - self.offset

    def _unpack(self, fmt: str, size: int) -> int:
        if self.remaining() < size:
            raise MalformedPacket(f"truncated reply: need {size} bytes at offset {self.offset}")
        (value,) = struct.unpack_from(fmt, self.data, self.offset)
        self.offset += size
        return value

    def byte(self) -> int:
        return self._unpack("<B", 1)

    def short(self) -> int:
        return self._unpack("<H", 2)

    def long(self) -> int:
        return self._unpack("<i", 4)

    def long_long(self) -> int:
        return self._unpack("<Q", 8)

    def float32(self) -> float:
        return self._unpack("<f", 4)

    def char(self) -> str:
        return chr(self.byte())

    def string(self) -> str:
        end = self.data.find(b"\x00", self.offset)
        if end < 0:
            raise MalformedPacket(f"unterminated string at offset {self.offset}")
        value = self.data[self.offset:end].decode("utf-8", errors="replace")
        self.offset = end + 1
        return value


def _cstring(s: str) -> bytes:
    return s.encode("utf-8") + b"\x00"


# --- Requests ---


def encode_request(kind: RequestKind, challenge: Optional[bytes] = None) -> bytes:
    """
    Build a request datagram. Players/rules without a challenge carry FF FF FF FF,
    which asks the host for a token. Info only carries a challenge if the host demanded one.
    """
    kind = RequestKind(kind)
    if challenge is not None and len(challenge) != CHALLENGE_LENGTH:
        raise ValueError("challenge must be 4 bytes")
    if kind is RequestKind.INFO:
        return SINGLE_PACKET + bytes([A2S_INFO]) + A2S_INFO_PAYLOAD + (challenge or b"")
    return SINGLE_PACKET + bytes([REQUEST_TYPES[kind]]) + (challenge or CHALLENGE_REQUEST)


# --- Replies ---


def response_type(raw: bytes) -> int:
    """Type byte of a single-packet reply."""
    if len(raw) < MARKER_LENGTH + 1:
        raise MalformedPacket(f"reply too short ({len(raw)} bytes)")
    if raw[:MARKER_LENGTH] != SINGLE_PACKET:
        raise MalformedPacket(f"unexpected marker {raw[:MARKER_LENGTH].hex()}")
    return raw[MARKER_LENGTH]


def parse_challenge(raw: bytes) -> bytes:
    """Return the 4-byte token of an S2C_CHALLENGE reply."""
    if response_type(raw) != S2C_CHALLENGE:
        raise MalformedPacket("not a challenge reply")
    token = raw[MARKER_LENGTH + 1:MARKER_LENGTH + 1 + CHALLENGE_LENGTH]
    if len(token) != CHALLENGE_LENGTH:
        raise MalformedPacket(f"challenge token is {len(token)} bytes")
    return token


def decode_info(raw: bytes) -> ServerInfo:
    """Parse S2A_INFO. Raises NoInfo on any other header, MalformedPacket on bad layout."""
    if len(raw) < MARKER_LENGTH + 1 or raw[:MARKER_LENGTH] != SINGLE_PACKET or raw[MARKER_LENGTH] != S2A_INFO:
        raise NoInfo("unrecognized info reply header")
    r = PacketReader(raw, MARKER_LENGTH + 1)
    protocol = r.byte()
    name = r.string()
    map_name = r.string()
    folder = r.string()
    game = r.string()
    app_id = r.short()
    players = r.byte()
    max_players = r.byte()
    bots = r.byte()
    server_type = r.char().lower()
    environment = r.char().lower()
    visibility = r.byte()
    vac = r.byte()
    version = r.string()

    extra = None
    if r.remaining() > 0:
        edf = r.byte()
        port = r.short() if edf & EDF_PORT else None
        steam_id = r.long_long() if edf & EDF_STEAM_ID else None
        spectator_port = spectator_name = None
        if edf & EDF_SPECTATOR:
            spectator_port = r.short()
            spectator_name = r.string()
        keywords = r.string() if edf & EDF_KEYWORDS else None
        game_id = r.long_long() if edf & EDF_GAME_ID else None
        extra = ExtraData(
            port=port,
            steam_id=steam_id,
            spectator_port=spectator_port,
            spectator_name=spectator_name,
            keywords=keywords,
            game_id=game_id,
        )

    return ServerInfo(
        protocol=protocol,
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        app_id=app_id,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=SERVER_TYPES.get(server_type, server_type),
        environment=ENVIRONMENTS.get(environment, environment),
        visibility=visibility,
        vac=vac,
        version=version,
        extra=extra,
    )


def decode_players(raw: bytes) -> List[PlayerInfo]:
    """Parse S2A_PLAYER: count(u8) + (index, name, score, duration) records, order kept."""
    if response_type(raw) != S2A_PLAYER:
        raise MalformedPacket(f"expected player reply, got type 0x{raw[MARKER_LENGTH]:02x}")
    r = PacketReader(raw, MARKER_LENGTH + 1)
    count = r.byte()
    players = []
    for _ in range(count):
        players.append(PlayerInfo(index=r.byte(), name=r.string(), score=r.long(), duration=r.float32()))
    return players


def decode_rules(raw: bytes) -> Dict[str, str]:
    """Parse S2A_RULES: count(u16) + null-terminated (name, value) pairs."""
    if response_type(raw) != S2A_RULES:
        raise MalformedPacket(f"expected rules reply, got type 0x{raw[MARKER_LENGTH]:02x}")
    r = PacketReader(raw, MARKER_LENGTH + 1)
    count = r.short()
    rules: Dict[str, str] = {}
    for _ in range(count):
        key = r.string()
        rules[key] = r.string()
    return rules


_DECODERS = {
    RequestKind.INFO: decode_info,
    RequestKind.PLAYERS: decode_players,
    RequestKind.RULES: decode_rules,
}


def decode(kind: RequestKind, raw: bytes) -> Parsed:
    """Decode a complete single-packet (or reassembled) reply for kind."""
    return _DECODERS[RequestKind(kind)](raw)


# --- Split replies ---


@dataclass
class _PendingResponse:
    total: int
    compressed: bool
    fragments: Dict[int, bytes] = field(default_factory=dict)


class PacketAssembler:
    """
    Collects datagrams of one exchange. feed() returns a complete reply
    (single-packet form, starting with FF FF FF FF) or None while fragments are missing.
    """

    def __init__(self) -> None:
        self._pending: Dict[int, _PendingResponse] = {}

    def feed(self, datagram: bytes) -> Optional[bytes]:
        marker = datagram[:MARKER_LENGTH]
        if marker == SINGLE_PACKET:
            return datagram
        if marker != SPLIT_PACKET:
            raise MalformedPacket(f"unknown packet marker {marker.hex()}")
        if len(datagram) < MARKER_LENGTH + SPLIT_HEADER.size:
            raise MalformedPacket("truncated split packet header")
        response_id, total, number, _size = SPLIT_HEADER.unpack_from(datagram, MARKER_LENGTH)
        compressed = bool(response_id & COMPRESSED_FLAG)
        if total == 0 or number >= total:
            raise MalformedPacket(f"fragment {number} of {total} out of range")

        pending = self._pending.get(response_id)
        if pending is None:
            if len(self._pending) >= MAX_PENDING_RESPONSES:
                raise MalformedPacket("too many interleaved split replies")
            pending = self._pending[response_id] = _PendingResponse(total=total, compressed=compressed)
        elif pending.total != total:
            raise MalformedPacket(f"fragment count changed from {pending.total} to {total}")
        pending.fragments[number] = datagram[MARKER_LENGTH + SPLIT_HEADER.size:]
        logger.debug("split reply %08x: fragment %d/%d", response_id & 0xFFFFFFFF, number + 1, total)

        if len(pending.fragments) < pending.total:
            return None
        del self._pending[response_id]
        payload = b"".join(pending.fragments[i] for i in range(pending.total))
        if pending.compressed:
            payload = _decompress(payload)
        return payload


def _decompress(payload: bytes) -> bytes:
    if len(payload) < COMPRESSED_HEADER.size:
        raise MalformedPacket("truncated compressed split header")
    size, crc = COMPRESSED_HEADER.unpack_from(payload)
    try:
        data = bz2.decompress(payload[COMPRESSED_HEADER.size:])
    except (OSError, ValueError) as e:
        raise MalformedPacket(f"bz2 decompression failed: {e}") from e
    if len(data) != size:
        raise MalformedPacket(f"decompressed {len(data)} bytes, header declared {size}")
    if zlib.crc32(data) & 0xFFFFFFFF != crc:
        raise MalformedPacket("crc32 mismatch in compressed reply")
    return data


# --- Reply builders (inverse of the decoders) ---


def encode_challenge(token: bytes) -> bytes:
    if len(token) != CHALLENGE_LENGTH:
        raise ValueError("challenge must be 4 bytes")
    return SINGLE_PACKET + bytes([S2C_CHALLENGE]) + token


def _type_char(value: str, names: Dict[str, str]) -> bytes:
    for code, name in names.items():
        if name == value:
            return code.encode()
    return value[:1].encode() or b"\x00"


def encode_info(info: ServerInfo) -> bytes:
    out = bytearray(SINGLE_PACKET + bytes([S2A_INFO, info.protocol]))
    for s in (info.name, info.map, info.folder, info.game):
        out += _cstring(s)
    out += struct.pack("<HBBB", info.app_id, info.players, info.max_players, info.bots)
    out += _type_char(info.server_type, SERVER_TYPES)
    out += _type_char(info.environment, ENVIRONMENTS)
    out += struct.pack("<BB", info.visibility, info.vac)
    out += _cstring(info.version)
    extra = info.extra
    if extra is not None:
        edf = extra.flags()
        out.append(edf)
        if edf & EDF_PORT:
            out += struct.pack("<H", extra.port)
        if edf & EDF_STEAM_ID:
            out += struct.pack("<Q", extra.steam_id)
        if edf & EDF_SPECTATOR:
            out += struct.pack("<H", extra.spectator_port or 0) + _cstring(extra.spectator_name or "")
        if edf & EDF_KEYWORDS:
            out += _cstring(extra.keywords)
        if edf & EDF_GAME_ID:
            out += struct.pack("<Q", extra.game_id)
    return bytes(out)


def encode_players(players: List[PlayerInfo]) -> bytes:
    out = bytearray(SINGLE_PACKET + bytes([S2A_PLAYER, len(players)]))
    for p in players:
        out += bytes([p.index]) + _cstring(p.name) + struct.pack("<if", p.score, p.duration)
    return bytes(out)


def encode_rules(rules: Dict[str, str]) -> bytes:
    out = bytearray(SINGLE_PACKET + bytes([S2A_RULES]) + struct.pack("<H", len(rules)))
    for key, value in rules.items():
        out += _cstring(key) + _cstring(value)
    return bytes(out)


def split_response(
    raw: bytes,
    response_id: int,
    max_size: int = MAX_PACKET_SIZE,
    compress: bool = False,
) -> List[bytes]:
    """Cut a single-packet reply into split fragments, optionally bz2-compressed."""
    payload = raw
    response_id &= 0x7FFFFFFF
    if compress:
        payload = COMPRESSED_HEADER.pack(len(raw), zlib.crc32(raw) & 0xFFFFFFFF) + bz2.compress(raw)
        response_id |= COMPRESSED_FLAG
    chunks = [payload[i:i + max_size] for i in range(0, len(payload), max_size)] or [b""]
    if len(chunks) > 0xFF:
        raise ValueError("reply too large for a split response")
    (signed_id,) = struct.unpack("<i", struct.pack("<I", response_id))
    return [
        SPLIT_PACKET + SPLIT_HEADER.pack(signed_id, len(chunks), number, max_size) + chunk
        for number, chunk in enumerate(chunks)
    ]


def describe_reply(raw: bytes, max_hex: int = 32) -> str:
    """Short description for logging: 'info', 'challenge', 'split 2/3' or a hex prefix."""
    names = {S2A_INFO: "info", S2A_PLAYER: "players", S2A_RULES: "rules", S2C_CHALLENGE: "challenge"}
    if raw[:MARKER_LENGTH] == SINGLE_PACKET and len(raw) > MARKER_LENGTH:
        return names.get(raw[MARKER_LENGTH], f"type 0x{raw[MARKER_LENGTH]:02x}")
    if raw[:MARKER_LENGTH] == SPLIT_PACKET and len(raw) >= MARKER_LENGTH + SPLIT_HEADER.size:
        _, total, number, _ = SPLIT_HEADER.unpack_from(raw, MARKER_LENGTH)
        return f"split {number + 1}/{total}"
    if not raw:
        return "empty"
    hex_prefix = raw[:max_hex].hex()
    if len(raw) > max_hex:
        hex_prefix += "..."
    return f"? {len(raw)} bytes hex={hex_prefix}"


def parse_port(port: Union[str, int]) -> int:
    """Port number in 1-65535; ValueError otherwise."""
    value = int(port)
    if not 0 < value <= 0xFFFF:
        raise ValueError(f"port {value} out of range 1-65535")
    return value


def split_host(host: str) -> Tuple[str, int]:
    """Return (ip, port) for 'ip:port' or '[v6]:port'."""
    addr, sep, port = host.rpartition(":")
    if not sep or not addr:
        raise ValueError(f"host must be ip:port, got {host!r}")
    if addr.startswith("[") and addr.endswith("]"):
        addr = addr[1:-1]
    return addr, parse_port(port)
