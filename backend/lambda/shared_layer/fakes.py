"""fakes.py — In-memory stand-ins for the records core collaborators.

Used by the layer and records_api test suites. Mirrors the interfaces of
DynamoVersionTable, S3BlobStore, CloudWatchMetrics and OperatorAlerts.
"""

from __future__ import annotations

import copy
import datetime as dt
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from prepg3_shared.claims import Claims, Role
from prepg3_shared.errors import ConflictError, StorageUnavailableError
from prepg3_shared.storage import IF_VERSION_ABSENT


class FakeVersionTable:
    def __init__(self):
        self.items = {}
        self.before_put = None
        self.fail_deletes = False
        # number of deletes allowed to succeed before fail_deletes applies
        self.deletes_before_failure = 0
        self.deleted = []
        self.put_calls = 0

    def get(self, entity_id, version=None):
        if version is not None:
            item = self.items.get((entity_id, int(version)))
            return copy.deepcopy(item) if item else None
        versions = [v for (i, v) in self.items if i == entity_id]
        if not versions:
            return None
        return copy.deepcopy(self.items[(entity_id, max(versions))])

    def query(self, entity_id):
        keys = sorted((k for k in self.items if k[0] == entity_id), key=lambda k: k[1], reverse=True)
        return [copy.deepcopy(self.items[k]) for k in keys]

    def put(self, item, condition=None):
        self.put_calls += 1
        if self.before_put is not None:
            self.before_put(self, item)
        key = (item["id"], int(item["version"]))
        if condition == IF_VERSION_ABSENT and key in self.items:
            raise ConflictError(entity_id=item["id"], version=item["version"])
        self.items[key] = copy.deepcopy(item)

    def delete(self, entity_id, version):
        if self.fail_deletes and len(self.deleted) >= self.deletes_before_failure:
            raise StorageUnavailableError()
        self.deleted.append(int(version))
        self.items.pop((entity_id, int(version)), None)

    def scan(self, predicate=None):
        out = [copy.deepcopy(v) for v in self.items.values()]
        return [i for i in out if predicate is None or predicate(i)]

    def versions_of(self, entity_id):
        return sorted(v for (i, v) in self.items if i == entity_id)


class FakeBlobStore:
    def __init__(self, bucket="test-bucket"):
        self.bucket = bucket
        self.objects = {}
        self.fail_deletes = False
        self.before_delete = None

    def put_object(self, key, body, content_type=None, bucket=None):
        self.objects[(bucket or self.bucket, key)] = (body, content_type)

    def signed_read_url(self, key, ttl_seconds, bucket=None):
        return f"https://{bucket or self.bucket}.s3.example.com/{key}?X-Amz-Expires={ttl_seconds}"

    def delete_object(self, key, bucket=None):
        if self.before_delete is not None:
            self.before_delete(self, key)
        if self.fail_deletes:
            raise StorageUnavailableError()
        self.objects.pop((bucket or self.bucket, key), None)


class RecordingMetrics:
    def __init__(self):
        self.records = []

    def record(self, metric_name, value=1, dimensions=None, unit="Count"):
        self.records.append((metric_name, value, dict(dimensions or {})))

    def names(self):
        return [r[0] for r in self.records]


class RecordingAlerts:
    def __init__(self):
        self.alerts = []

    def inconsistent_state(self, entity_kind, entity_id, detail):
        self.alerts.append((entity_kind, entity_id, detail))


class Clock:
    def __init__(self, now=None):
        self.now = now or dt.datetime(2024, 3, 1, 12, 0, 0, tzinfo=dt.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + dt.timedelta(**kwargs)


def make_claims(role=Role.INVESTOR, owner_id=None, subject_id="user-1", email=None):
    return Claims(
        subject_id=subject_id,
        roles=frozenset({role}) if role is not None else frozenset(),
        owner_id=owner_id,
        email=email,
    )
