"""Helpers for reading Firestore CloudEvent payloads.

Firestore triggers deliver the document in the REST "typed value" shape,
e.g. {"restaurantId": {"stringValue": "r1"}}. Gen 2 triggers may also send
the payload as a protobuf-encoded DocumentEventData, which is converted to the
same JSON shape before decoding.
"""
import base64
from datetime import datetime

from google.events.cloud.firestore import DocumentEventData


def decode_value(value):
    """Convert a single Firestore typed value into a plain Python value."""
    if not isinstance(value, dict):
        return value

    if "nullValue" in value:
        return None
    if "stringValue" in value:
        return value["stringValue"]
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        # int64 values are serialized as strings
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        timestamp = value["timestampValue"]
        if isinstance(timestamp, str):
            try:
                return datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
            except ValueError:
                return timestamp
        return timestamp
    if "referenceValue" in value:
        return value["referenceValue"]
    if "bytesValue" in value:
        raw = value["bytesValue"]
        return base64.b64decode(raw) if isinstance(raw, str) else raw
    if "geoPointValue" in value:
        point = value["geoPointValue"] or {}
        return {
            "latitude": float(point.get("latitude", 0.0)),
            "longitude": float(point.get("longitude", 0.0)),
        }
    if "mapValue" in value:
        return decode_fields((value["mapValue"] or {}).get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(item) for item in (value["arrayValue"] or {}).get("values", [])]

    return None


def decode_fields(fields):
    """Decode a Firestore "fields" map into a dict."""
    if not isinstance(fields, dict):
        return {}
    return {key: decode_value(value) for key, value in fields.items()}


def event_payload_to_dict(data):
    """Normalize CloudEvent data (JSON dict or protobuf bytes) to the JSON shape."""
    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    if isinstance(data, (bytes, bytearray)):
        event = DocumentEventData.deserialize(bytes(data))
        return DocumentEventData.to_dict(event, preserving_proto_field_name=False)
    raise ValueError(f"Unsupported Firestore event payload type: {type(data).__name__}")


def document_id_from_name(name):
    """projects/p/databases/d/documents/videos/v123 -> v123"""
    if not name:
        return None
    return name.rstrip('/').split('/')[-1] or None
