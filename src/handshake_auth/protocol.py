"""
Protocol Handler for the handshake authentication engine.

Defines the sign-in message text format (composition and parsing), the
challenge request/response shapes and the proof envelope a client submits.
"""

import json
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import InvalidRequestError, ValidationError


HEADER_SUFFIX = " wants you to sign in with your account:"
NONCE_PATTERN = re.compile(r"^[A-Za-z0-9]{8,}$")

_TAGGED_FIELDS = [
    ("URI", "uri"),
    ("Version", "version"),
    ("Chain ID", "chain_id"),
    ("Nonce", "nonce"),
    ("Issued At", "issued_at"),
    ("Expiration Time", "expiration_time"),
    ("Not Before", "not_before"),
    ("Request ID", "request_id"),
]
_TAGGED_ORDER = [label for label, _ in _TAGGED_FIELDS]


def format_timestamp(value: datetime) -> str:
    """Render a datetime as ISO8601 UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO8601 timestamp into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SignInMessage(BaseModel):
    """Structured form of the text message a client signs."""

    domain: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    statement: Optional[str] = None
    uri: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    chain_id: int = Field(..., gt=0)
    nonce: str
    issued_at: str
    expiration_time: Optional[str] = None
    not_before: Optional[str] = None
    request_id: Optional[str] = None
    resources: List[str] = Field(default_factory=list)

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v: str) -> str:
        """Nonces are alphanumeric and at least 8 characters long."""
        if not NONCE_PATTERN.match(v):
            raise ValueError("nonce must be at least 8 alphanumeric characters")
        return v

    @field_validator("issued_at", "expiration_time", "not_before")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        """Validate ISO8601 timestamp format."""
        if v is None:
            return v
        try:
            parse_timestamp(v)
            return v
        except ValueError:
            raise ValueError("Invalid ISO8601 timestamp format")

    @field_validator("statement")
    @classmethod
    def validate_statement(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and "\n" in v:
            raise ValueError("statement must be a single line")
        return v

    def get_expiration_time(self) -> Optional[datetime]:
        return parse_timestamp(self.expiration_time) if self.expiration_time else None

    def get_not_before(self) -> Optional[datetime]:
        return parse_timestamp(self.not_before) if self.not_before else None

    def prepare_message(self) -> str:
        """Compose the canonical message text to be signed."""
        prefix = "\n".join([f"{self.domain}{HEADER_SUFFIX}", self.address])
        if self.statement:
            prefix = "\n\n".join([prefix, self.statement])
        else:
            prefix += "\n"

        suffix_lines = []
        for label, attr in _TAGGED_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                suffix_lines.append(f"{label}: {value}")
        if self.resources:
            suffix_lines.append("Resources:")
            suffix_lines.extend(f"- {resource}" for resource in self.resources)

        return "\n\n".join([prefix, "\n".join(suffix_lines)])

    @classmethod
    def parse(cls, text: str) -> "SignInMessage":
        """
        Parse message text into its structured fields.

        Args:
            text: Message text as composed by prepare_message()

        Returns:
            Parsed message

        Raises:
            ValidationError: If the text does not follow the message format
        """
        if not isinstance(text, str):
            raise ValidationError("Message must be a string")

        lines = text.split("\n")
        if len(lines) < 4 or not lines[0].endswith(HEADER_SUFFIX):
            raise ValidationError("Missing sign-in message header")

        fields: Dict[str, Any] = {
            "domain": lines[0][:-len(HEADER_SUFFIX)],
            "address": lines[1],
        }
        if lines[2] != "":
            raise ValidationError("Expected blank line after address")

        index = 3
        if lines[index] == "":
            index += 1
        else:
            fields["statement"] = lines[index]
            if index + 1 >= len(lines) or lines[index + 1] != "":
                raise ValidationError("Expected blank line after statement")
            index += 2

        labels = dict(_TAGGED_FIELDS)
        position = 0
        while index < len(lines):
            line = lines[index]
            index += 1
            if line == "Resources:":
                resources = []
                while index < len(lines) and lines[index].startswith("- "):
                    resources.append(lines[index][2:])
                    index += 1
                fields["resources"] = resources
                continue

            label, sep, value = line.partition(": ")
            if not sep or label not in labels:
                raise ValidationError(f"Unexpected line in message: {line!r}")

            # Tagged fields must appear in canonical order
            order = _TAGGED_ORDER.index(label)
            if order < position:
                raise ValidationError(f"Field out of order: {label}")
            position = order + 1
            fields[labels[label]] = value

        try:
            return cls(**fields)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid sign-in message: {e}")


class MessageChallengeRequest(BaseModel):
    """Challenge request asking for a fully composed message."""

    model_config = ConfigDict(extra="forbid")

    response_type: Literal["message"] = "message"
    address: str
    uri: str
    chain_id: Any


class NonceExpirationChallengeRequest(BaseModel):
    """Challenge request asking only for a nonce and its expiration."""

    model_config = ConfigDict(extra="forbid")

    response_type: Literal["nonce-expiration"] = "nonce-expiration"


ChallengeRequest = Annotated[
    Union[MessageChallengeRequest, NonceExpirationChallengeRequest],
    Field(discriminator="response_type"),
]


class MessageChallengeResponse(BaseModel):
    """Ready-to-sign message plus the nonce it binds."""

    message: str
    nonce: str


class NonceExpirationChallengeResponse(BaseModel):
    """Nonce and expiration for client-side message assembly."""

    nonce: str
    expiration_time: str = Field(..., serialization_alias="expirationTime")


ChallengeResponse = Union[MessageChallengeResponse, NonceExpirationChallengeResponse]


class ProofEnvelope(BaseModel):
    """Signed proof submitted by a client."""

    message: str
    signature: str
    nonce: str
    address: Optional[str] = None


_challenge_request_adapter = TypeAdapter(ChallengeRequest)


class ProtocolHandler:
    """Parses and serializes handshake payloads."""

    @staticmethod
    def parse_challenge_request(data: Union[bytes, str, Dict[str, Any]]):
        """
        Parse raw challenge request data into its request variant.

        A payload without ``response_type`` asks for a full message.

        Raises:
            InvalidRequestError: If the payload matches neither variant
        """
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            if isinstance(data, str):
                data = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidRequestError(f"Invalid JSON: {e}")

        if not isinstance(data, dict):
            raise InvalidRequestError("Challenge request must be an object")

        payload = dict(data)
        payload.setdefault("response_type", "message")
        try:
            return _challenge_request_adapter.validate_python(payload)
        except PydanticValidationError as e:
            error = e.errors()[0]
            loc = [str(part) for part in error["loc"]]
            if error["type"].startswith("union_tag"):
                field = "response_type"
            else:
                # First element is the union tag once the discriminator resolved
                field = loc[-1] if loc else None
            raise InvalidRequestError(f"Invalid challenge request: {error['msg']}", field=field)

    @staticmethod
    def parse_proof(data: Union[bytes, str, Dict[str, Any]]) -> ProofEnvelope:
        """Parse raw proof data into a ProofEnvelope."""
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            if isinstance(data, str):
                return ProofEnvelope.model_validate_json(data)
            return ProofEnvelope.model_validate(data)
        except (UnicodeDecodeError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid proof envelope: {e}")

    @staticmethod
    def serialize(model: BaseModel) -> bytes:
        """Serialize a payload model to JSON bytes."""
        return model.model_dump_json(exclude_none=True, by_alias=True).encode("utf-8")
