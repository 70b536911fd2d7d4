import pytest
pytest.importorskip("dask")
pytest.importorskip("distributed")
from src.distributed import executor


def test_create_local_client_uses_localcluster_and_client(monkeypatch):
    created = {}

    class DummyCluster:
        def __init__(self, n_workers, threads_per_worker, processes):
            created["n_workers"] = n_workers
            created["threads_per_worker"] = threads_per_worker
            created["processes"] = processes

    class DummyClient:
        def __init__(self, cluster):
            created["cluster"] = cluster

    monkeypatch.setattr(executor, "LocalCluster", DummyCluster)
    monkeypatch.setattr(executor, "Client", DummyClient)

    client = executor.create_local_client(n_workers=2, threads_per_worker=3)

    assert isinstance(client, DummyClient)
    assert created["n_workers"] == 2
    assert created["threads_per_worker"] == 3
    assert created["processes"] is False


def test_map_files_creates_delayed_tasks_and_calls_function():
    # The real Dask delayed object has a .compute() method
    filenames = ["file1.root", "file2.root"]
    config = {"tree_name": "Tree"}

    def process_function(fname, cfg):
        # Stand-in for the real per-file selection
        return fname, cfg["tree_name"]

    tasks = executor.map_files(
        client=None,
        filenames=filenames,
        process_function=process_function,
        config=config,
    )

    assert len(tasks) == len(filenames)

    # Compute a couple of delayed results to make sure the graph is correct
    results = [task.compute(scheduler="synchronous") for task in tasks]
    assert results == [("file1.root", "Tree"), ("file2.root", "Tree")]


def test_compute_tasks_gathers_in_order():
    class DummyClient:
        def compute(self, tasks):
            return [task.compute(scheduler="synchronous") for task in tasks]

        def gather(self, futures):
            return list(futures)

    tasks = executor.map_files(None, ["a.root", "b.root"], lambda f, c: f.upper(), {})

    assert executor.compute_tasks(DummyClient(), tasks) == ["A.ROOT", "B.ROOT"]
