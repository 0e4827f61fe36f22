from collections import Counter
from types import SimpleNamespace
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from remote_datasets.models.models import StoreConfig
from remote_datasets.storage import RemoteHandle

BUCKET = "test-bucket"


def parquet_bytes(table: pa.Table) -> bytes:
    """Encode a table as parquet in memory.

    :param table: Table to encode
    :returns: Parquet file bytes
    """
    sink = pa.BufferOutputStream()
    pq.write_table(table, sink)
    return sink.getvalue().to_pybytes()


ANIMALS: dict[str, pa.Table] = {
    "birds/2022": pa.table(
        {"species": ["sparrow", "robin", "owl"], "count": [3, 5, 1], "weight": [0.03, 0.08, 1.5]}
    ),
    "birds/2023": pa.table({"species": ["sparrow", "eagle"], "count": [7, 2], "weight": [0.03, 4.2]}),
    "fish/2022": pa.table({"species": ["salmon", "trout"], "count": [10, 4], "weight": [4.5, 2.0]}),
}


class FakePaginator:
    def __init__(self, client: "FakeS3Client") -> None:
        self.client = client

    def paginate(self, **kwargs: Any) -> Any:
        token = None
        while True:
            page = self.client.list_objects_v2(**kwargs, ContinuationToken=token)
            yield page
            token = page.get("NextContinuationToken")
            if token is None:
                break


class FakeS3Client:
    """In-memory S3 double that records every call."""

    def __init__(self, objects: dict[str, bytes], page_size: int = 2) -> None:
        self.objects = objects
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def object_reads(self) -> Counter[str]:
        return Counter(kwargs["Key"] for name, kwargs in self.calls if name == "open_input_file")

    def reads_under(self, fragment: str) -> int:
        return sum(n for key, n in self.object_reads().items() if fragment in key)

    def get_paginator(self, operation: str) -> FakePaginator:
        assert operation == "list_objects_v2"
        return FakePaginator(self)

    def list_objects_v2(
        self,
        Bucket: str,
        Prefix: str = "",
        Delimiter: str | None = None,
        MaxKeys: int | None = None,
        ContinuationToken: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(("list_objects_v2", {"Bucket": Bucket, "Prefix": Prefix, "Delimiter": Delimiter}))
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        prefixes: list[str] = []
        if Delimiter:
            direct = []
            for key in keys:
                rest = key[len(Prefix) :]
                if Delimiter in rest:
                    child = Prefix + rest.split(Delimiter, 1)[0] + Delimiter
                    if child not in prefixes:
                        prefixes.append(child)
                else:
                    direct.append(key)
            keys = direct

        limit = MaxKeys or self.page_size
        start = int(ContinuationToken or 0)
        chunk = keys[start : start + limit]
        page: dict[str, Any] = {"Contents": [{"Key": k, "Size": len(self.objects[k])} for k in chunk]}
        if start == 0 and prefixes:
            page["CommonPrefixes"] = [{"Prefix": p} for p in prefixes]
        if MaxKeys is None and start + limit < len(keys):
            page["NextContinuationToken"] = str(start + limit)
        return page


class FakeS3FileSystem:
    """Stand-in for pyarrow.fs.S3FileSystem reading the objects of a FakeS3Client.

    Opens are recorded on the client so listings and reads share one call log.
    """

    def __init__(self, client: FakeS3Client) -> None:
        self.client = client

    def open_input_file(self, path: str) -> pa.NativeFile:
        bucket, key = path.split("/", 1)
        self.client.calls.append(("open_input_file", {"Bucket": bucket, "Key": key}))
        if key not in self.client.objects:
            raise FileNotFoundError(f"Path does not exist '{path}'")
        return pa.BufferReader(self.client.objects[key])


def animal_objects(root: str = "data/animals", hive: bool = False) -> dict[str, bytes]:
    objects: dict[str, bytes] = {}
    for partition, table in ANIMALS.items():
        category, year = partition.split("/")
        directory = f"category={category}/year={year}" if hive else partition
        objects[f"{root}/{directory}/part-0.parquet"] = parquet_bytes(table)
    objects[f"{root}/_SUCCESS"] = b""
    return objects


@pytest.fixture
def fake_client() -> FakeS3Client:
    objects = animal_objects()
    objects.update(animal_objects("data/hive", hive=True))
    objects["data/notes/readme.txt"] = b"not a dataset"
    return FakeS3Client(objects)


@pytest.fixture
def store_config() -> StoreConfig:
    return StoreConfig(bucket=BUCKET, prefix="data")


@pytest.fixture
def handle(store_config: StoreConfig, fake_client: FakeS3Client) -> RemoteHandle:
    return RemoteHandle(store_config, client=fake_client, filesystem=FakeS3FileSystem(fake_client))


@pytest.fixture
def fake_context() -> Any:
    logger = SimpleNamespace(
        info=lambda *_, **__: None,
        debug=lambda *_, **__: None,
        error=lambda *_, **__: None,
        warning=lambda *_, **__: None,
    )
    return SimpleNamespace(log=logger)
