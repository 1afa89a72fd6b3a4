import json
from dataclasses import dataclass

from udp_protocol import TYPE_SYSTEM

# Wire format: one UTF-8 JSON object per datagram
# {"Type": <str>, "Data": <str>}
# Reads are capped at RECV_BUFFER_SIZE bytes, longer datagrams are truncated.
RECV_BUFFER_SIZE = 2048

FIELD_TYPE = "Type"
FIELD_DATA = "Data"


class MalformedPacket(ValueError):
    """Raised when received bytes do not hold a valid packet."""


@dataclass(frozen=True)
class Packet:
    type: str
    data: str

    @property
    def is_control(self) -> bool:
        return self.type == TYPE_SYSTEM

    def pack(self) -> bytes:
        """
        Serializes the packet into bytes.
        """
        body = {FIELD_TYPE: self.type, FIELD_DATA: self.data}
        return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @classmethod
    def unpack(cls, data: bytes) -> 'Packet':
        """
        Deserializes bytes into a Packet object.
        Raises MalformedPacket if the bytes are not a JSON object with
        string Type and Data fields.
        """
        try:
            body = json.loads(data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise MalformedPacket(f"Packet is not valid UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise MalformedPacket(f"Packet is not valid JSON: {e}") from e

        if not isinstance(body, dict):
            raise MalformedPacket(f"Expected a JSON object, got {type(body).__name__}")

        for field in (FIELD_TYPE, FIELD_DATA):
            if field not in body:
                raise MalformedPacket(f"Missing field {field!r}")
            if not isinstance(body[field], str):
                raise MalformedPacket(f"Field {field!r} must be a string, got {type(body[field]).__name__}")

        return cls(type=body[FIELD_TYPE], data=body[FIELD_DATA])


def encode(packet: Packet) -> bytes:
    return packet.pack()


def decode(data: bytes) -> Packet:
    return Packet.unpack(data)
