import httpx


def test_models_forwards_query_and_body(gateway):
    client, upstream = gateway()
    r = client.get("/v1/models?owned_by=team-a&limit=5")
    assert r.status_code == 200
    assert r.json() == {"object": "list", "data": [{"id": "m1", "object": "model"}]}

    sent = upstream.calls[0]
    assert sent.method == "GET"
    assert sent.url.path == "/v1/models"
    assert sent.url.params["owned_by"] == "team-a"
    assert sent.url.params["limit"] == "5"
    assert sent.headers["authorization"] == f"Bearer {upstream.config.inner_token}"


def test_models_without_query(gateway):
    client, upstream = gateway()
    client.get("/v1/models")
    assert str(upstream.calls[0].url) == "http://upstream.test/v1/models"


def test_embeddings_body_is_forwarded_verbatim(gateway):
    raw = b'{"input": ["a", "b"],   "model": "embed-1", "dimensions": 64}'

    def handler(request):
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]})

    client, upstream = gateway(handler)
    r = client.post(
        "/v1/embeddings", content=raw, headers={"content-type": "application/json"}
    )
    assert r.status_code == 200
    assert r.json()["data"][0]["embedding"] == [0.1, 0.2]

    sent = upstream.calls[0]
    assert sent.url.path == "/v1/embeddings"
    assert sent.content == raw
    assert sent.headers["content-type"] == "application/json"


def test_embeddings_upstream_client_error(gateway):
    client, _ = gateway(lambda request: httpx.Response(400, json={"error": "bad input"}))
    r = client.post("/v1/embeddings", json={"model": "e1", "input": "x"})
    assert r.status_code == 400
    assert r.json() == {"error": "Client error from upstream service."}


def test_models_unreachable_upstream(gateway):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = gateway(handler)
    r = client.get("/v1/models")
    assert r.status_code == 502
    assert r.json() == {"error": "Bad Gateway. No response from upstream service."}


def test_embeddings_internal_error_names_the_route(gateway):
    def handler(request):
        raise KeyError("boom")

    client, _ = gateway(handler)
    r = client.post("/v1/embeddings", json={"model": "e1", "input": "x"})
    assert r.status_code == 500
    assert r.json() == {"error": "Internal server error during /v1/embeddings proxy."}


def test_upstream_paths_are_configurable(gateway):
    client, upstream = gateway(
        upstream_base_url="http://upstream.test/base/",
        chat_path="/openai/chat",
        models_path="/openai/models",
    )
    client.get("/v1/models")
    client.post("/v1/chat/completions", json={"messages": []})
    assert [str(call.url) for call in upstream.calls] == [
        "http://upstream.test/base/openai/models",
        "http://upstream.test/base/openai/chat",
    ]
