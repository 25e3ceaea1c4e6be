"""
Identifier codec.

Maps the store's 12-byte ObjectId to and from public identifiers of the form
``prefix_[meta_]payload`` where the payload is the base58 encoding of the id bytes,
e.g. ``dood_local_2dcagW31wsvM2hkoB``. The legacy format ``DD2dcagW31wsvM2hkoB``
(two character prefix glued to the payload) is still accepted when decoding.

Tokens that carry no known prefix are passed through unchanged so that identifiers
belonging to other subsystems remain comparable as opaque values.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import base58
from bson import ObjectId
from bson.errors import InvalidId

from mongocrud.services.notify import Notification

logger = logging.getLogger(__name__)

# prefix, optional meta (environment), payload
IDENTIFIER_PATTERN = re.compile(r'^([a-z]+)_([a-z_]*?)_?([^_]+)$', re.IGNORECASE)
LEGACY_PREFIX_LENGTH = 2
FALLBACK_PREFIX = "derp"
OBJECT_ID_LENGTH = 12
MAX_INT_ID = 1 << (8 * OBJECT_ID_LENGTH)


@dataclass(frozen=True)
class Resolved:
    """Token decoded to a lower-case hex id"""
    value: str
    prefix: str = ""
    meta: str = ""
    legacy: bool = False

    @property
    def resolved(self) -> bool:
        return True


@dataclass(frozen=True)
class Passthrough:
    """Token left as-is: no known prefix, or not a string at all"""
    value: Any

    @property
    def resolved(self) -> bool:
        return False


ParseResult = Union[Resolved, Passthrough]


class IdentifierCodec:
    """
    Encodes and decodes public identifiers.

    Args:
        prefixes: {entity name: current prefix}, e.g. {"doodad": "dood"}
        prefix_aliases: {entity name: legacy two character prefix}, e.g. {"doodad": "DD"}
        environment: Environment name used for the meta part of encoded ids
        reporter: Diagnostic sink (see Notification)
    """

    def __init__(
        self,
        prefixes: Optional[Dict[str, str]] = None,
        prefix_aliases: Optional[Dict[str, str]] = None,
        environment: str = "default",
        reporter: Any = Notification
    ):
        self.prefixes = dict(prefixes or {})
        self.prefix_aliases = dict(prefix_aliases or {})
        self.environment = environment
        self.reporter = reporter
        self._known = set(self.prefixes.values())
        self._known_legacy = set(self.prefix_aliases.values())

    # Decoding -------------------------------------------------------------

    def parse(self, token: Any) -> ParseResult:
        """Two-stage parse: underscore scheme first, then the legacy two character scheme"""
        if isinstance(token, ObjectId):
            return Resolved(str(token))
        if not isinstance(token, str):
            return Passthrough(token)

        match = IDENTIFIER_PATTERN.match(token)
        if match is not None:
            prefix, meta, payload = match.groups()
            if prefix in self._known:
                hex_id = self._decode_payload(payload)
                if hex_id:
                    return Resolved(hex_id, prefix, meta)
            return Passthrough(token)

        if len(token) > LEGACY_PREFIX_LENGTH:
            prefix = token[:LEGACY_PREFIX_LENGTH]
            if prefix in self._known_legacy:
                hex_id = self._decode_payload(token[LEGACY_PREFIX_LENGTH:])
                if hex_id:
                    return Resolved(hex_id, prefix, legacy=True)

        return Passthrough(token)

    def decode(self, token: Any) -> Any:
        """Comparable form of an identifier: hex when resolvable, otherwise the input unchanged"""
        return self.parse(token).value

    get_comparable_id = decode

    def to_object_id(self, mixed: Any) -> Optional[ObjectId]:
        """Convert any supported identifier shape to an ObjectId, or None. Never raises."""
        if isinstance(mixed, ObjectId):
            return mixed
        try:
            if isinstance(mixed, bool):
                return None
            if isinstance(mixed, int):
                if 0 <= mixed < MAX_INT_ID:
                    return ObjectId(f"{mixed:024x}")
                return None
            if isinstance(mixed, bytes):
                return ObjectId(mixed) if len(mixed) == OBJECT_ID_LENGTH else None
            if isinstance(mixed, str):
                comparable = self.decode(mixed)
                if ObjectId.is_valid(comparable):
                    return ObjectId(comparable)
        except (InvalidId, TypeError, ValueError) as e:
            self.reporter.warning('Could not convert value to ObjectId', mixed, e)
        return None

    get_object_id = to_object_id

    def compare(self, a: Any, b: Any) -> bool:
        """Whether two identifiers in any supported shape denote the same id"""
        return self.decode(a) == self.decode(b)

    compare_ids = compare

    # Encoding -------------------------------------------------------------

    @staticmethod
    def environment_prefix(env_name: str) -> str:
        if env_name == "default":
            return "local_"
        elif env_name == "production":
            return ""
        return env_name + "_"

    def encode(self, id: Any, prefix: Optional[str], env_prefix: Optional[str] = None) -> str:
        """
        Encode an id for public consumption.

        Args:
            id: ObjectId, 24 char hex string, raw bytes or integer
            prefix: Entity prefix, e.g. "dood"
            env_prefix: Meta segment; defaults to this codec's environment prefix

        Returns:
            Public identifier such as "dood_local_2dcagW31wsvM2hkoB"
        """
        if not prefix:
            self.reporter.report('Public id requested without a prefix', None, id, prefix)
            prefix = FALLBACK_PREFIX
        if env_prefix is None:
            env_prefix = self.environment_prefix(self.environment)
        payload = base58.b58encode(self._to_bytes(id)).decode('ascii')
        return f"{prefix}_{env_prefix}{payload}"

    def get_public_id(self, id: Any, prefix: Optional[str]) -> str:
        return self.encode(id, prefix)

    # Helpers --------------------------------------------------------------

    @staticmethod
    def _decode_payload(payload: str) -> Optional[str]:
        try:
            raw = base58.b58decode(payload)
        except ValueError:
            logger.debug(f"Not a base58 payload: {payload!r}")
            return None
        return raw.hex() if len(raw) == OBJECT_ID_LENGTH else None

    @staticmethod
    def _to_bytes(id: Any) -> bytes:
        if isinstance(id, ObjectId):
            return id.binary
        if isinstance(id, bytes):
            return id
        if isinstance(id, bool):
            raise TypeError(f"Cannot encode identifier of type {type(id).__name__}")
        if isinstance(id, int):
            if id < 0:
                raise ValueError("Cannot encode a negative identifier")
            return id.to_bytes(max(1, (id.bit_length() + 7) // 8), 'big')
        if isinstance(id, str):
            return bytes.fromhex(id)
        raise TypeError(f"Cannot encode identifier of type {type(id).__name__}")
