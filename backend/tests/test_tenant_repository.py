from __future__ import annotations

from imomate.repositories.base_repository import TenantRepository, apply_patch
from imomate.repositories.crm_repos import clients_repo


def _repo(table, clock) -> TenantRepository:
    return clients_repo(table=table, clock=clock)


def test_create_then_get_round_trips(table, clock):
    repo = _repo(table, clock)
    created = repo.create("t1", {"name": "Maria Silva", "email": "maria@example.pt", "tags": ["vip"]})
    assert created["ok"] is True
    doc = created["data"]
    assert doc["id"].startswith("cli_")
    assert doc["tenantId"] == "t1"
    assert doc["isDeleted"] is False
    assert doc["createdAt"] == doc["updatedAt"] == "2024-03-01T09:00:00Z"
    assert doc["path"] == f"clients/{doc['id']}"

    fetched = repo.get_by_id("t1", doc["id"])
    assert fetched["ok"] is True
    assert fetched["data"] == doc
    # Storage keys never leak into returned documents.
    assert "pk" not in fetched["data"] and "gsi1pk" not in fetched["data"]


def test_other_tenant_never_sees_document(table, clock):
    repo = _repo(table, clock)
    doc = repo.create("t1", {"name": "Maria Silva"})["data"]

    res = repo.get_by_id("t2", doc["id"])
    assert res["ok"] is False
    assert res["code"] in ("not_found", "unauthorized")
    assert "data" not in res


def test_tenant_mismatch_on_stored_item_reads_as_not_found(table, clock):
    repo = _repo(table, clock)
    table.put_item(
        item={
            "pk": "TENANT#t1",
            "sk": "CLIENTS#cli_stray",
            "collection": "clients",
            "id": "cli_stray",
            "tenantId": "t2",
            "name": "Eve",
            "isDeleted": False,
        }
    )
    res = repo.get_by_id("t1", "cli_stray")
    assert res == {"ok": False, "error": "Document not found", "code": "unauthorized"}


def test_invalid_tenant_is_rejected(table, clock):
    repo = _repo(table, clock)
    assert repo.create("", {"name": "Maria"})["code"] == "validation"
    assert repo.get_by_id("TENANT#x", "cli_1")["code"] == "validation"


def test_schema_errors_are_keyed_by_field(table, clock):
    repo = _repo(table, clock)
    res = repo.create("t1", {"name": "Maria", "clientScore": {"overall": 150}})
    assert res["ok"] is False
    assert res["code"] == "validation"
    assert "clientScore.overall" in res["errors"]


def test_update_strips_immutable_fields(table, clock):
    repo = _repo(table, clock)
    doc = repo.create("t1", {"name": "Maria Silva"})["data"]
    clock.advance(hours=1)

    res = repo.update(
        "t1",
        doc["id"],
        {"name": "Maria S.", "id": "hijack", "tenantId": "t2", "createdAt": "1999-01-01T00:00:00Z", "address.city": "Porto"},
    )
    assert res["ok"] is True
    out = res["data"]
    assert out["id"] == doc["id"]
    assert out["tenantId"] == "t1"
    assert out["createdAt"] == doc["createdAt"]
    assert out["updatedAt"] == "2024-03-01T10:00:00Z"
    assert out["name"] == "Maria S."
    assert out["address"]["city"] == "Porto"
    assert out["address"]["country"] == "Portugal"


def test_update_missing_document_is_not_found(table, clock):
    res = _repo(table, clock).update("t1", "cli_missing", {"name": "X"})
    assert res["code"] == "not_found"


def test_unique_fields_reject_duplicates(table, clock):
    repo = _repo(table, clock)
    first = repo.create("t1", {"name": "Maria", "email": "m@example.pt"}, unique_fields=["email"])["data"]

    dup = repo.create("t1", {"name": "Other", "email": "m@example.pt"}, unique_fields=["email"])
    assert dup["ok"] is False
    assert dup["code"] == "duplicate"
    assert dup["error"] == "email already exists: m@example.pt"
    assert dup["conflict"]["id"] == first["id"]

    # Other tenants are unaffected.
    assert repo.create("t2", {"name": "Maria", "email": "m@example.pt"}, unique_fields=["email"])["ok"] is True


def test_soft_delete_is_idempotent_and_hidden_from_reads(table, clock):
    repo = _repo(table, clock)
    doc = repo.create("t1", {"name": "Maria"})["data"]
    repo.create("t1", {"name": "Joao"})

    first = repo.soft_delete("t1", doc["id"], actor_id="u1")
    second = repo.soft_delete("t1", doc["id"], actor_id="u1")
    assert first["ok"] and second["ok"]
    assert second["data"]["isDeleted"] is True
    assert second["data"]["deletedBy"] == "u1"

    assert [d["name"] for d in repo.list("t1")["data"]] == ["Joao"]
    assert repo.count("t1")["data"] == 1
    assert len(repo.list("t1", include_deleted=True)["data"]) == 2
    assert repo.get_stats("t1")["data"] == {"total": 2, "active": 1, "deleted": 1}

    restored = repo.restore("t1", doc["id"])
    assert restored["data"]["isDeleted"] is False
    assert repo.count("t1")["data"] == 2


def test_hard_delete_removes_item(table, clock):
    repo = _repo(table, clock)
    doc = repo.create("t1", {"name": "Maria"})["data"]
    assert repo.hard_delete("t1", doc["id"])["ok"] is True
    assert repo.get_by_id("t1", doc["id"])["code"] == "not_found"


def test_list_paginates_with_cursor(table, clock):
    repo = _repo(table, clock)
    for i in range(5):
        repo.create("t1", {"name": f"Client {chr(65 + i)}"})
        clock.advance(minutes=1)

    seen: list[str] = []
    cursor = None
    pages = 0
    while True:
        res = repo.list("t1", page_size=2, cursor=cursor)
        assert res["ok"] is True
        seen.extend(d["name"] for d in res["data"])
        pages += 1
        if not res["hasMore"]:
            assert res["nextToken"] is None
            break
        cursor = res["nextToken"]

    assert pages == 3
    assert seen == ["Client E", "Client D", "Client C", "Client B", "Client A"]

    asc = repo.list("t1", order_by=("createdAt", "asc"), page_size=10)["data"]
    assert [d["name"] for d in asc][0] == "Client A"


def test_cursor_is_bound_to_tenant(table, clock):
    repo = _repo(table, clock)
    for i in range(3):
        repo.create("t1", {"name": f"Client {i}"})
        repo.create("t2", {"name": f"Other {i}"})
        clock.advance(minutes=1)

    token = repo.list("t1", page_size=1)["nextToken"]
    assert token
    res = repo.list("t2", page_size=1, cursor=token)
    assert res["ok"] is False
    assert res["code"] == "validation"


def test_list_filters_and_non_index_ordering(table, clock):
    repo = _repo(table, clock)
    repo.create("t1", {"name": "Beatriz", "tags": ["vip"], "clientScore": {"overall": 40, "category": "C"}})
    repo.create("t1", {"name": "Ana", "tags": ["vip", "lisboa"], "clientScore": {"overall": 85, "category": "A"}})
    repo.create("t1", {"name": "Carlos", "tags": []})

    vip = repo.list("t1", filters=[("tags", "array-contains", "vip")], order_by=("name", "asc"))["data"]
    assert [d["name"] for d in vip] == ["Ana", "Beatriz"]

    top = repo.list("t1", filters=[("clientScore.overall", ">=", 80)])["data"]
    assert [d["name"] for d in top] == ["Ana"]

    eq = repo.list("t1", filters={"name": "Carlos"})["data"]
    assert len(eq) == 1

    bad = repo.list("t1", filters=[("name", "~", "x")])
    assert bad["code"] == "validation"


def test_search_is_bounded_case_insensitive_substring(table, clock, monkeypatch):
    from imomate.settings import settings

    repo = _repo(table, clock)
    for name in ("Maria Silva", "Mariana Costa", "Joao Silva", "Rui Marques"):
        repo.create("t1", {"name": name})
        clock.advance(minutes=1)

    assert repo.search("t1", "m")["data"] == []
    hits = repo.search("t1", "SILVA")["data"]
    assert sorted(d["name"] for d in hits) == ["Joao Silva", "Maria Silva"]

    # Documents beyond the scan window are never matched.
    monkeypatch.setattr(settings, "search_scan_limit", 2)
    assert [d["name"] for d in repo.search("t1", "rui")["data"]] == []
    assert len(repo.search("t1", "mari")["data"]) == 2


def test_batch_create_validates_everything_first(table, clock):
    repo = _repo(table, clock)
    bad = repo.batch_create("t1", [{"name": "Ana"}, {"email": "x@example.pt"}])
    assert bad["ok"] is False
    assert "items[1].name" in bad["errors"]
    assert table.all_items() == []

    good = repo.batch_create("t1", [{"name": "Ana"}, {"name": "Rui"}])
    assert good["ok"] is True
    assert repo.count("t1")["data"] == 2


def test_subscription_delivers_snapshot_on_change(table, clock):
    repo = _repo(table, clock)
    received: list[dict] = []
    sub = repo.subscribe("t1", received.append, autostart=False)

    assert sub.poll_once() is True
    assert received[-1]["data"] == []
    assert sub.poll_once() is False

    doc = repo.create("t1", {"name": "Maria"})["data"]
    assert sub.poll_once() is True
    assert [d["id"] for d in received[-1]["data"]] == [doc["id"]]

    clock.advance(seconds=1)
    repo.soft_delete("t1", doc["id"])
    assert sub.poll_once() is True
    assert received[-1]["data"] == []

    sub.unsubscribe()
    assert sub.active is False
    assert sub.poll_once() is False


def test_apply_patch_supports_dotted_keys():
    doc = {"address": {"city": "Lisboa", "street": "Rua A"}, "name": "X"}
    out = apply_patch(doc, {"address.city": "Porto", "metadata.lastContactAt": "t"})
    assert out["address"] == {"city": "Porto", "street": "Rua A"}
    assert out["metadata"] == {"lastContactAt": "t"}
    assert doc["address"]["city"] == "Lisboa"


def test_subscription_snapshot_spans_every_page(table, clock, monkeypatch):
    from imomate.settings import settings

    monkeypatch.setattr(settings, "max_page_size", 2)
    repo = _repo(table, clock)
    docs = []
    for i in range(5):
        docs.append(repo.create("t1", {"name": f"Client {i}"})["data"])
        clock.advance(minutes=1)

    received: list[dict] = []
    sub = repo.subscribe("t1", received.append, autostart=False)
    assert sub.poll_once() is True
    assert received[-1]["ok"] is True
    assert [d["id"] for d in received[-1]["data"]] == [d["id"] for d in reversed(docs)]

    # A change to the oldest document, past the first page, still fires.
    repo.update("t1", docs[0]["id"], {"name": "Client zero"})
    assert sub.poll_once() is True
    assert received[-1]["data"][-1]["name"] == "Client zero"

    by_name = repo.subscribe("t1", received.append, order_by=("name", "asc"), autostart=False)
    assert by_name.poll_once() is True
    assert [d["name"] for d in received[-1]["data"]] == ["Client 1", "Client 2", "Client 3", "Client 4", "Client zero"]
