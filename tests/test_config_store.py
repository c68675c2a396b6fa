from threading import Thread

import pytest

from ccr.config_store import REDACTED, ConfigStore
from ccr.errors import NotFoundError, ValidationError


def test_put_returns_strictly_increasing_versions():
    store = ConfigStore()
    versions = [store.put("db", "plain", {"user": str(i)}) for i in range(5)]
    assert versions == [1, 2, 3, 4, 5]
    assert store.latest_version("db") == 5


def test_old_versions_stay_readable_and_unchanged():
    store = ConfigStore()
    store.put("db", "plain", {"user": "a"})
    store.put("db", "plain", {"user": "b"})

    assert store.get("db", 1).data == {"user": "a"}
    assert store.get("db").data == {"user": "b"}
    assert store.get("db").version == 2


def test_unknown_name_or_version_is_not_found():
    store = ConfigStore()
    with pytest.raises(NotFoundError):
        store.get("nope")
    with pytest.raises(NotFoundError):
        store.latest_version("nope")

    store.put("db", "plain", {"user": "a"})
    with pytest.raises(NotFoundError):
        store.get("db", 7)


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"DB_USERNAME": "admin"},
        {"user": "admin"},
        {"DB_USERNAME": "admin", "DB_PASSWORD": ""},
    ],
)
def test_sensitive_entries_are_schema_checked(data):
    store = ConfigStore()
    with pytest.raises(ValidationError):
        store.put("creds", "sensitive", data)
    # Nothing was written.
    with pytest.raises(NotFoundError):
        store.get("creds")


def test_credential_shaped_sensitive_entry_is_accepted():
    store = ConfigStore()
    assert store.put("creds", "sensitive", {"DB_USERNAME": "admin", "DB_PASSWORD": "s3cret"}) == 1
    assert store.put("api", "sensitive", {"token": "abc"}) == 1


@pytest.mark.parametrize(
    "name,entry_class,data",
    [
        ("Bad_Name", "plain", {"a": "b"}),
        ("db", "secretish", {"a": "b"}),
        ("db", "plain", {"has space": "b"}),
        ("db", "plain", {"a": 1}),
    ],
)
def test_malformed_entries_are_rejected(name, entry_class, data):
    with pytest.raises(ValidationError):
        ConfigStore().put(name, entry_class, data)


def test_class_cannot_change():
    store = ConfigStore()
    store.put("db", "plain", {"user": "a"})
    with pytest.raises(ValidationError):
        store.put("db", "sensitive", {"user": "a", "password": "b"})
    assert store.latest_version("db") == 1


def test_delete_hides_entry_and_put_continues_numbering():
    store = ConfigStore()
    store.put("db", "plain", {"user": "a"})
    store.put("db", "plain", {"user": "b"})
    store.delete("db")

    with pytest.raises(NotFoundError):
        store.latest_version("db")
    with pytest.raises(NotFoundError):
        store.get("db", 1)
    with pytest.raises(NotFoundError):
        store.delete("db")

    assert store.put("db", "plain", {"user": "c"}) == 3


def test_redacted_masks_only_sensitive_values():
    store = ConfigStore()
    store.put("app", "plain", {"CACHE_SIZE": "100"})
    store.put("creds", "sensitive", {"DB_USERNAME": "admin", "DB_PASSWORD": "s3cret"})

    assert store.get("app").redacted()["data"] == {"CACHE_SIZE": "100"}
    assert store.get("creds").redacted()["data"] == {"DB_USERNAME": REDACTED, "DB_PASSWORD": REDACTED}


def test_concurrent_puts_never_reuse_a_version():
    store = ConfigStore()
    results: list[int] = []

    def writer(i: int) -> None:
        for j in range(10):
            results.append(store.put("db", "plain", {"w": f"{i}-{j}"}))

    threads = [Thread(target=writer, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == list(range(1, 61))
    assert store.latest_version("db") == 60


def test_put_publishes_change_events(env):
    events = env.runtime.feed.watch("config", timeout_s=0.2)
    env.store.put("db", "plain", {"user": "a"})
    env.store.delete("db")

    got = [(e.name, e.action, e.version) for e in events]
    assert got == [("db", "put", 1), ("db", "delete", None)]


def test_list_entries_shows_latest_versions():
    store = ConfigStore()
    store.put("b", "plain", {"k": "1"})
    store.put("a", "plain", {"k": "1"})
    store.put("a", "plain", {"k": "2"})

    listed = {e["name"]: e["latest_version"] for e in store.list_entries()}
    assert listed == {"a": 2, "b": 1}
