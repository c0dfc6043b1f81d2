import base64
from datetime import datetime, timezone

import pytest
from google.events.cloud.firestore import Document, DocumentEventData, Value

from utils.firestore_event import (
    decode_fields,
    decode_value,
    document_id_from_name,
    event_payload_to_dict,
)


class TestDecodeValue:

    @pytest.mark.parametrize('value, expected', [
        ({'stringValue': "Joe's Diner"}, "Joe's Diner"),
        ({'integerValue': '42'}, 42),
        ({'doubleValue': 4.5}, 4.5),
        ({'booleanValue': True}, True),
        ({'nullValue': None}, None),
        ({'nullValue': 'NULL_VALUE'}, None),
        ({'referenceValue': 'projects/p/databases/d/documents/users/A'},
         'projects/p/databases/d/documents/users/A'),
    ])
    def test_scalars(self, value, expected):
        assert decode_value(value) == expected

    def test_timestamp(self):
        decoded = decode_value({'timestampValue': '2024-05-01T12:30:00Z'})
        assert decoded == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_bytes(self):
        encoded = base64.b64encode(b'clip').decode('ascii')
        assert decode_value({'bytesValue': encoded}) == b'clip'

    def test_geo_point(self):
        decoded = decode_value({'geoPointValue': {'latitude': 40.7, 'longitude': -74.0}})
        assert decoded == {'latitude': 40.7, 'longitude': -74.0}

    def test_nested_map_and_array(self):
        value = {'mapValue': {'fields': {
            'tags': {'arrayValue': {'values': [{'stringValue': 'ramen'}, {'integerValue': '3'}]}},
            'owner': {'mapValue': {'fields': {'id': {'stringValue': 'u1'}}}},
        }}}

        assert decode_value(value) == {'tags': ['ramen', 3], 'owner': {'id': 'u1'}}

    def test_empty_containers(self):
        assert decode_value({'arrayValue': {}}) == []
        assert decode_value({'mapValue': {}}) == {}


def test_decode_fields_of_video_document():
    fields = {
        'restaurantId': {'stringValue': 'r1'},
        'restaurantName': {'stringValue': 'Sushi Bar'},
        'durationSeconds': {'integerValue': '31'},
    }

    assert decode_fields(fields) == {
        'restaurantId': 'r1',
        'restaurantName': 'Sushi Bar',
        'durationSeconds': 31,
    }
    assert decode_fields(None) == {}


class TestEventPayload:

    def test_json_payload_passes_through(self):
        payload = {'value': {'name': 'n', 'fields': {}}}
        assert event_payload_to_dict(payload) is payload

    def test_missing_payload(self):
        assert event_payload_to_dict(None) == {}

    def test_protobuf_payload(self):
        name = 'projects/p/databases/(default)/documents/videos/v123'
        event = DocumentEventData(value=Document(
            name=name,
            fields={'restaurantId': Value(string_value='r1')},
        ))

        payload = event_payload_to_dict(DocumentEventData.serialize(event))

        assert payload['value']['name'] == name
        assert decode_fields(payload['value']['fields']) == {'restaurantId': 'r1'}
        assert not payload.get('oldValue')

    def test_unsupported_payload(self):
        with pytest.raises(ValueError):
            event_payload_to_dict('plain text')


@pytest.mark.parametrize('name, expected', [
    ('projects/p/databases/(default)/documents/videos/v123', 'v123'),
    ('documents/videos/v123/', 'v123'),
    ('', None),
    (None, None),
])
def test_document_id_from_name(name, expected):
    assert document_id_from_name(name) == expected
