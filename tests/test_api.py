from fastapi.testclient import TestClient

from chainindex.researchers import StaticReviewerPool
from tests.conftest import ADMIN, ALICE, BOB, REVIEWERS

PAPER = {
    "content_hash": "QmX1234567890abcdef",
    "title": "Blockchain in Academic Research",
    "abstract_text": "This paper explores blockchain consensus mechanisms for academic research.",
    "doi": "10.1000/blockchain-paper-2024",
    "publication_year": 2024,
    "keywords": ["blockchain", "consensus"],
    "authors": [ALICE, BOB],
    "version": "1.0.0",
}


def as_identity(identity):
    return {"X-Identity": identity}


def post_paper(client: TestClient, identity=ALICE, **overrides):
    response = client.post("/papers", json={**PAPER, **overrides}, headers=as_identity(identity))
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_read_main(client: TestClient):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Welcome to ChainIndex. POST /papers to submit a paper."}


def test_list_papers_empty(client: TestClient):
    response = client.get("/papers")
    assert response.status_code == 200
    assert response.json() == []


def test_submit_and_read_paper(client: TestClient):
    paper_id = post_paper(client)
    assert paper_id == 1

    response = client.get(f"/papers/{paper_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["title"] == PAPER["title"]
    assert data["authors"] == [ALICE, BOB]
    assert data["keywords"] == ["blockchain", "consensus"]
    assert data["submitter"] == ALICE
    assert data["is_active"] is True
    assert data["embeddings_generated"] is False

    by_doi = client.get("/papers/by-doi", params={"doi": PAPER["doi"]})
    assert by_doi.status_code == 200
    assert by_doi.json()["id"] == paper_id


def test_submit_requires_identity(client: TestClient):
    response = client.post("/papers", json=PAPER)
    assert response.status_code == 422


def test_error_mapping(client: TestClient):
    post_paper(client)

    duplicate = client.post("/papers", json=PAPER, headers=as_identity(ALICE))
    assert duplicate.status_code == 409
    assert duplicate.json()["kind"] == "ConflictError"

    invalid = client.post("/papers", json={**PAPER, "content_hash": "Qm2", "doi": "d2", "publication_year": 1800},
                          headers=as_identity(ALICE))
    assert invalid.status_code == 400
    assert invalid.json()["kind"] == "ValidationError"

    missing = client.get("/papers/404")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "NotFoundError"


def test_filter_papers(client: TestClient):
    first = post_paper(client)
    second = post_paper(client, content_hash="Qm2", doi="10.1000/two")
    client.post(f"/papers/{first}/deactivate", headers=as_identity(ALICE))

    active = client.get("/papers", params={"active": True}).json()
    assert [p["id"] for p in active] == [second]
    inactive = client.get("/papers", params={"active": False}).json()
    assert [p["id"] for p in inactive] == [first]
    assert len(client.get("/papers", params={"limit": 1}).json()) == 1


def test_update_paper(client: TestClient):
    paper_id = post_paper(client)

    forbidden = client.put(f"/papers/{paper_id}", json={"content_hash": "QmNew", "version": "2.0"},
                           headers=as_identity(BOB))
    assert forbidden.status_code == 403
    assert forbidden.json()["kind"] == "AuthorizationError"

    response = client.put(f"/papers/{paper_id}", json={"content_hash": "QmNew", "version": "2.0"},
                          headers=as_identity(ALICE))
    assert response.status_code == 200
    data = client.get(f"/papers/{paper_id}").json()
    assert (data["content_hash"], data["version"]) == ("QmNew", "2.0")


def test_deactivate_paper_twice(client: TestClient):
    paper_id = post_paper(client)
    assert client.post(f"/papers/{paper_id}/deactivate", headers=as_identity(ALICE)).status_code == 200
    assert client.post(f"/papers/{paper_id}/deactivate", headers=as_identity(ALICE)).status_code == 409


def test_store_embedding_reference(client: TestClient):
    paper_id = post_paper(client)

    by_stranger = client.post(f"/papers/{paper_id}/embedding", json={"embedding_ref": "QmEmb"},
                              headers=as_identity(BOB))
    assert by_stranger.status_code == 403

    by_admin = client.post(f"/papers/{paper_id}/embedding", json={"embedding_ref": "QmEmb"},
                           headers=as_identity(ADMIN))
    assert by_admin.status_code == 200
    assert client.get(f"/papers/{paper_id}").json()["embedding_ref"] == "QmEmb"


def test_generate_embedding_and_search(client: TestClient):
    relevant = post_paper(client)
    unrelated = post_paper(
        client,
        content_hash="QmCooking",
        doi="10.1000/cooking",
        title="Cooking recipes",
        abstract_text="Pasta and sauce recipes for the kitchen.",
        keywords=["cooking"],
        authors=[ALICE],
    )

    assert client.post(f"/papers/{relevant}/embedding/generate", headers=as_identity(BOB)).status_code == 403
    for paper_id in (relevant, unrelated):
        response = client.post(f"/papers/{paper_id}/embedding/generate", headers=as_identity(ALICE))
        assert response.status_code == 200
        assert response.json()["embedding_ref"]

    response = client.get("/search", params={"q": "blockchain consensus mechanisms"})
    assert response.status_code == 200
    hits = response.json()
    assert [hit["paper_id"] for hit in hits] == [relevant]
    assert 0 < hits[0]["score"] <= 1
    assert hits[0]["title"] == PAPER["title"]

    stats = client.get("/embeddings/stats").json()
    assert stats == {"total_papers": 2, "papers_with_embeddings": 2, "papers_without_embeddings": 0}


def test_search_rejects_blank_query(client: TestClient):
    response = client.get("/search", params={"q": "  "})
    assert response.status_code == 400


def test_backfill_endpoint(client: TestClient):
    post_paper(client)
    response = client.post("/embeddings/backfill")
    assert response.status_code == 200
    # TestClient runs background tasks before returning
    assert client.get("/embeddings/stats").json()["papers_with_embeddings"] == 1


def test_reviewer_assignment_flow(client: TestClient, oracle):
    paper_id = post_paper(client)
    assert client.get(f"/papers/{paper_id}/reviewer").json()["state"] == "UNREQUESTED"

    response = client.post(f"/papers/{paper_id}/reviewer", headers=as_identity(ALICE))
    assert response.status_code == 202
    token = response.json()["token"]

    # The local oracle answered in a background task after the response
    status = client.get(f"/papers/{paper_id}/reviewer").json()
    assert status["state"] == "FULFILLED"
    assert status["token"] == token
    assert status["reviewer"] in REVIEWERS
    assert client.get(f"/papers/{paper_id}").json()["assigned_reviewer"] == status["reviewer"]
    assert oracle.pending == []

    again = client.post(f"/papers/{paper_id}/reviewer", headers=as_identity(ALICE))
    assert again.status_code == 409


def test_oracle_callback(client: TestClient, services):
    services.settings.ORACLE_AUTO_FULFILL = False
    services.settings.ORACLE_CALLBACK_SECRET = "s3cret"
    paper_id = post_paper(client)
    token = client.post(f"/papers/{paper_id}/reviewer", headers=as_identity(ALICE)).json()["token"]
    assert client.get(f"/papers/{paper_id}/reviewer").json()["state"] == "REQUESTED"

    body = {"token": token, "random_value": 4}
    assert client.post("/oracle/fulfill", json=body).status_code == 403
    assert client.post("/oracle/fulfill", json=body, headers={"X-Oracle-Secret": "wrong"}).status_code == 403

    response = client.post("/oracle/fulfill", json=body, headers={"X-Oracle-Secret": "s3cret"})
    assert response.status_code == 200
    assert client.get(f"/papers/{paper_id}/reviewer").json()["reviewer"] == REVIEWERS[4 % 3]

    # Redelivery is accepted and changes nothing
    body["random_value"] = 5
    assert client.post("/oracle/fulfill", json=body, headers={"X-Oracle-Secret": "s3cret"}).status_code == 200
    assert client.get(f"/papers/{paper_id}/reviewer").json()["reviewer"] == REVIEWERS[1]


def test_oracle_callback_rejects_negative_value(client: TestClient):
    response = client.post("/oracle/fulfill", json={"token": 1, "random_value": -1})
    assert response.status_code == 422


def test_events_endpoint(client: TestClient):
    paper_id = post_paper(client)
    client.post(f"/papers/{paper_id}/deactivate", headers=as_identity(ALICE))

    events = client.get("/events").json()
    assert [e["name"] for e in events] == ["PaperSubmitted", "PaperDeactivated"]
    assert events[0]["submitter"] == ALICE

    filtered = client.get("/events", params={"name": "PaperDeactivated"}).json()
    assert filtered == [{"name": "PaperDeactivated", "paper_id": paper_id}]


def test_failed_background_delivery_can_be_redelivered(client: TestClient, services, oracle):
    services.assignments.pool = StaticReviewerPool([])
    paper_id = post_paper(client)

    token = client.post(f"/papers/{paper_id}/reviewer", headers=as_identity(ALICE)).json()["token"]

    # The background delivery hit the empty pool; the request is still open
    assert client.get(f"/papers/{paper_id}/reviewer").json()["state"] == "REQUESTED"
    assert oracle.pending == [token]

    services.assignments.pool = StaticReviewerPool(REVIEWERS)
    response = client.post("/oracle/pending/fulfill")
    assert response.status_code == 200
    assert response.json() == {"delivered": 1, "pending": []}
    status = client.get(f"/papers/{paper_id}/reviewer").json()
    assert status["state"] == "FULFILLED"
    assert status["reviewer"] in REVIEWERS
