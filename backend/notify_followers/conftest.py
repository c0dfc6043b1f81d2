import copy

import pytest
from firebase_admin import firestore
from google.api_core import exceptions as gcp_exceptions


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocumentReference:
    def __init__(self, db, path):
        self._db = db
        self.path = path

    @property
    def id(self):
        return self.path[-1]

    def collection(self, name):
        return FakeCollectionReference(self._db, self.path + (name,))

    def get(self):
        return FakeSnapshot(self, self._db.docs.get(self.path))

    def set(self, data):
        self._db.docs[self.path] = dict(data)

    def create(self, data):
        if self.path in self._db.docs:
            raise gcp_exceptions.AlreadyExists(f"Document already exists: {'/'.join(self.path)}")
        self.set(data)

    def update(self, data):
        if self.path not in self._db.docs:
            raise gcp_exceptions.NotFound(f"No document to update: {'/'.join(self.path)}")
        doc = self._db.docs[self.path]
        for key, value in data.items():
            if value is firestore.DELETE_FIELD:
                doc.pop(key, None)
            else:
                doc[key] = value


class FakeQuery:
    def __init__(self, db, path, filters=()):
        self._db = db
        self.path = path
        self.filters = tuple(filters)

    def where(self, filter=None):
        return FakeQuery(self._db, self.path, self.filters + (filter,))

    def _matches(self, data):
        for field_filter in self.filters:
            actual = data.get(field_filter.field_path)
            if field_filter.op_string == '==':
                if actual != field_filter.value:
                    return False
            elif field_filter.op_string == 'array_contains':
                if not isinstance(actual, list) or field_filter.value not in actual:
                    return False
            else:
                raise NotImplementedError(field_filter.op_string)
        return True

    def stream(self):
        for path in sorted(self._db.docs):
            if path[:-1] == self.path and self._matches(self._db.docs[path]):
                yield FakeSnapshot(FakeDocumentReference(self._db, path), self._db.docs[path])


class FakeCollectionReference(FakeQuery):
    def document(self, document_id):
        return FakeDocumentReference(self._db, self.path + (document_id,))


class FakeFirestore:
    """In-memory stand-in for the parts of firestore.Client the function uses."""

    def __init__(self):
        self.docs = {}
        self.get_all_calls = []

    def collection(self, name):
        return FakeCollectionReference(self, (name,))

    def get_all(self, references):
        references = list(references)
        self.get_all_calls.append([ref.path for ref in references])
        for ref in references:
            yield ref.get()

    # Test helpers
    def add(self, path, data):
        self.docs[tuple(path.split('/'))] = dict(data)

    def data(self, path):
        return self.docs.get(tuple(path.split('/')))


@pytest.fixture
def fake_db():
    return FakeFirestore()
