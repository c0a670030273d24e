"Typed Jupyter messages and their wire codec, built on jupyter_client's `Session`."
import binascii, hmac, uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from jupyter_client.jsonutil import parse_date
from jupyter_client.session import DELIM, Session
from traitlets import TraitError

PROTOCOL_VERSION = "5.0"
DEFAULT_SCHEME = "hmac-sha256"


class ProtocolError(Exception): "A received message could not be turned into a `Message`."
class MalformedMessageError(ProtocolError): "Bad frame count, bad signature hex, or bad JSON."
class AuthenticationError(ProtocolError): "Signature does not match the message body."


class MsgType(str, Enum):
    KERNEL_INFO_REQUEST = "kernel_info_request"
    KERNEL_INFO_REPLY = "kernel_info_reply"
    EXECUTE_REQUEST = "execute_request"
    EXECUTE_INPUT = "execute_input"
    EXECUTE_RESULT = "execute_result"
    EXECUTE_REPLY = "execute_reply"
    ERROR = "error"
    STATUS = "status"
    SHUTDOWN_REQUEST = "shutdown_request"
    SHUTDOWN_REPLY = "shutdown_reply"
    CONNECT_REQUEST = "connect_request"
    CONNECT_REPLY = "connect_reply"

    @classmethod
    def lookup(cls, name:str)->"MsgType|None":
        "Return the member named by wire string `name`, or None for verbs we don't know."
        try: return cls(name)
        except ValueError: return None


def new_msg_id()->str: return str(uuid.uuid4())
def utcnow()->datetime: return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Header:
    msg_id:str
    session:str
    msg_type:str
    username:str = ""
    date:datetime|None = None
    version:str = PROTOCOL_VERSION

    @classmethod
    def new(cls, msg_type:str, session:str, new_id:Callable[[], str]=new_msg_id, now:Callable[[], datetime]=utcnow)->"Header":
        "Fresh outbound header: new id, current time, protocol version 5.0."
        return cls(msg_id=new_id(), session=session, msg_type=str(getattr(msg_type, "value", msg_type)), date=now())

    def to_dict(self)->dict:
        return dict(msg_id=self.msg_id, username=self.username, session=self.session, date=self.date,
            msg_type=self.msg_type, version=self.version)

    @classmethod
    def from_dict(cls, data:Any)->"Header":
        "Build a header from parsed JSON; raises `MalformedMessageError` on a bad shape."
        if not isinstance(data, dict): raise MalformedMessageError("header is not a JSON object")
        for key in ("msg_id", "session", "msg_type"):
            if not isinstance(data.get(key), str): raise MalformedMessageError(f"header field {key!r} missing or not a string")
        username = data.get("username") or ""
        version = data.get("version") or PROTOCOL_VERSION
        if not isinstance(username, str) or not isinstance(version, str): raise MalformedMessageError("header username/version not strings")
        fields = dict(msg_id=data["msg_id"], session=data["session"], msg_type=data["msg_type"], username=username, version=version)
        for key, value in fields.items():
            if not _is_utf8(value): raise MalformedMessageError(f"header field {key!r} is not valid unicode: {value!r}")
        return cls(date=_parse_header_date(data.get("date")), **fields)


def _is_utf8(s:str)->bool:
    "False for strings holding lone surrogates, which can never be written back out."
    try: s.encode("utf-8")
    except UnicodeEncodeError: return False
    return True


def _parse_header_date(raw:Any)->datetime|None:
    if raw is None or raw == "": return None
    if not isinstance(raw, str): raise MalformedMessageError(f"header date is not a string: {raw!r}")
    try: parsed = parse_date(raw)
    except (ValueError, OverflowError) as exc: raise MalformedMessageError(f"invalid header date {raw!r}") from exc
    if not isinstance(parsed, datetime): raise MalformedMessageError(f"invalid header date {raw!r}")
    return parsed


@dataclass
class Message:
    header:Header
    content:Any = field(default_factory=dict)
    parent_header:Header|None = None
    metadata:Any = field(default_factory=dict)
    identities:tuple[bytes, ...] = ()

    @property
    def msg_type(self)->str: return self.header.msg_type

    def reply(self, msg_type:str, content:Any, metadata:Any=None, new_id:Callable[[], str]=new_msg_id,
        now:Callable[[], datetime]=utcnow)->"Message":
        "Message bound to this one: same identities and session, parented on our header."
        return Message(header=Header.new(msg_type, self.header.session, new_id=new_id, now=now), content=content,
            parent_header=self.header, metadata={} if metadata is None else metadata, identities=tuple(self.identities))


class MessageCodec:
    """Typed wire encode/decode on top of a jupyter_client `Session`.

    The session holds the key and digest scheme and does the frame split, packing and signing.
    On top of it `decode` adds the checks a kernel loop needs: a signature that is not hex of the
    right length is malformed, a wrong one is rejected before any JSON is parsed, and every
    failure surfaces as a `ProtocolError`. An empty key is Jupyter's unsigned mode: nothing is
    signed and signatures are not checked.
    """
    def __init__(self, key:str|bytes="", scheme:str=DEFAULT_SCHEME):
        if isinstance(key, str): key = key.encode()
        try:
            self.session = Session(key=key, signature_scheme=scheme)
            self.digest_size = self.session.digest_mod().digest_size
        except (TraitError, TypeError, ValueError) as exc: raise ValueError(f"unsupported signature scheme {scheme!r}") from exc
        self.scheme = scheme

    @property
    def signed(self)->bool: return self.session.auth is not None

    def sign(self, parts)->bytes:
        "Lowercase hex HMAC of `parts`, in order; empty in unsigned mode."
        return self.session.sign(parts)

    def pack(self, obj:Any)->bytes: return self.session.pack(obj)

    def unpack(self, data:bytes, what:str)->Any:
        try: return self.session.unpack(bytes(data))
        except (ValueError, RecursionError) as exc: raise MalformedMessageError(f"invalid JSON in {what} frame: {exc}") from None

    def split_identities(self, frames)->tuple[tuple[bytes, ...], list[bytes]]:
        "Split `frames` at the first delimiter into (identities, body after the delimiter)."
        try: idents, body = self.session.feed_identities([bytes(f) for f in frames])
        except ValueError: raise MalformedMessageError("no <IDS|MSG> delimiter frame") from None
        return tuple(idents), list(body)

    def check_signature(self, sig_hex:bytes, parts):
        if not self.signed: return
        if not sig_hex: raise MalformedMessageError("unsigned message, but this kernel's connection key requires signed messages")
        try: sig = binascii.unhexlify(sig_hex)
        except (binascii.Error, ValueError): raise MalformedMessageError(f"signature is not hex: {sig_hex[:80]!r}") from None
        if len(sig) != self.digest_size:
            raise MalformedMessageError(f"signature has {len(sig)} bytes, {self.scheme} needs {self.digest_size}")
        if not hmac.compare_digest(self.sign(parts), bytes(sig_hex).lower()): raise AuthenticationError("invalid message signature")

    def decode(self, frames)->Message:
        """Authenticate and parse raw wire `frames` into a `Message`.

        The four JSON frames are verified byte-for-byte before anything is parsed, so a forged
        message never reaches the JSON decoder. Frames past the content frame (binary buffers)
        are not signed and are dropped. The returned message never carries a parent header.
        """
        identities, body = self.split_identities(frames)
        if len(body) < 5: raise MalformedMessageError(f"expected at least 5 frames after delimiter, got {len(body)}")
        parts = body[1:5]
        self.check_signature(body[0], parts)
        header = Header.from_dict(self.unpack(parts[0], "header"))
        return Message(header=header, content=self.unpack(parts[3], "content"), parent_header=None,
            metadata=self.unpack(parts[2], "metadata"), identities=identities)

    def encode(self, msg:Message)->list[bytes]:
        "Serialize and sign `msg` into wire frames: identities, delimiter, signature, four JSON frames."
        parent = None if msg.parent_header is None else msg.parent_header.to_dict()
        parts = [self.pack(msg.header.to_dict()), self.pack(parent), self.pack(msg.metadata), self.pack(msg.content)]
        return [*msg.identities, DELIM, self.sign(parts), *parts]
