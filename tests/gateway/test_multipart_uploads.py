import base64
import json

PNG = b"\x89PNG\r\n\x1a\nfake-png-bytes"
JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


def _data_url(mime, data):
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"


def _post(client, payload, files, field="payload"):
    return client.post(
        "/v1/chat/completions",
        data={field: payload if isinstance(payload, str) else json.dumps(payload)},
        files=files,
    )


def test_unreferenced_upload_is_appended_to_last_message(gateway):
    client, upstream = gateway()
    payload = {
        "model": "vision-1",
        "messages": [
            {"role": "system", "content": "You describe photos."},
            {"role": "user", "content": "Describe this"},
        ],
        "max_tokens": 64,
    }
    r = _post(client, payload, [("image", ("cat.png", PNG, "image/png"))])

    assert r.status_code == 200
    sent = upstream.last_json
    assert sent["max_tokens"] == 64
    assert sent["messages"][0] == {"role": "system", "content": "You describe photos."}
    assert sent["messages"][1]["content"] == [
        {"type": "text", "text": "Describe this"},
        {
            "type": "image_url",
            "image_url": {"url": _data_url("image/png", PNG), "detail": "high"},
        },
    ]
    assert upstream.calls[0].headers["content-type"] == "application/json"


def test_referenced_upload_replaces_image_file_part(gateway):
    client, upstream = gateway()
    payload = {
        "model": "vision-1",
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "image_file", "image_file": {"file_key": "left", "detail": "low"}},
                    {"type": "text", "text": "Which is sharper?"},
                ],
            }
        ],
    }
    files = [
        ("left", ("l.jpg", JPEG, "image/jpeg")),
        ("right", ("r.png", PNG, "image/png")),
    ]
    r = _post(client, payload, files)

    assert r.status_code == 200
    content = upstream.last_json["messages"][0]["content"]
    assert content[0] == {
        "type": "image_url",
        "image_url": {"url": _data_url("image/jpeg", JPEG), "detail": "low"},
    }
    assert content[1] == {"type": "text", "text": "Which is sharper?"}
    # "right" had no placement and lands at the end of the last message
    assert content[2]["image_url"]["url"] == _data_url("image/png", PNG)
    assert all(part["type"] != "image_file" for part in content)


def test_upload_without_messages_creates_user_message(gateway):
    client, upstream = gateway()
    r = _post(client, {"model": "vision-1"}, [("image", ("cat.png", PNG, "image/png"))])

    assert r.status_code == 200
    assert upstream.last_json["messages"] == [
        {
            "role": "user",
            "content": [
                {
                    "type": "image_url",
                    "image_url": {"url": _data_url("image/png", PNG), "detail": "high"},
                }
            ],
        }
    ]


def test_oversized_attachment_names_the_limit(gateway):
    client, upstream = gateway(max_attachment_bytes=10)
    r = _post(
        client,
        {"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        [("image", ("big.png", b"x" * 11, "image/png"))],
    )
    assert r.status_code == 413
    assert "10 bytes" in r.json()["error"]
    assert upstream.calls == []


def test_attachment_at_the_limit_is_accepted(gateway):
    client, upstream = gateway(max_attachment_bytes=10)
    r = _post(
        client,
        {"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        [("image", ("ok.png", b"x" * 10, "image/png"))],
    )
    assert r.status_code == 200
    assert len(upstream.calls) == 1


def test_too_many_attachments(gateway):
    client, upstream = gateway(max_attachments=1)
    r = _post(
        client,
        {"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        [
            ("a", ("a.png", PNG, "image/png")),
            ("b", ("b.png", PNG, "image/png")),
        ],
    )
    assert r.status_code == 413
    assert "at most 1" in r.json()["error"]
    assert upstream.calls == []


def test_disallowed_mime_type(gateway):
    client, upstream = gateway()
    r = _post(
        client,
        {"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        [("doc", ("notes.txt", b"hello", "text/plain"))],
    )
    assert r.status_code == 400
    assert "text/plain" in r.json()["error"]
    assert upstream.calls == []


def test_malformed_payload_field(gateway):
    client, upstream = gateway()
    r = _post(client, '{"model": "m", "messages": [', [("image", ("a.png", PNG, "image/png"))])
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON in payload field"}
    assert upstream.calls == []


def test_missing_payload_field(gateway):
    client, upstream = gateway()
    r = _post(
        client,
        {"model": "m", "messages": []},
        [("image", ("a.png", PNG, "image/png"))],
        field="json",
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON in payload field"}


def test_payload_with_bad_structure(gateway):
    client, upstream = gateway()
    r = _post(client, {"messages": [{"content": "no role"}]}, [("image", ("a.png", PNG, "image/png"))])
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON in payload field"}


def test_custom_payload_field_name(gateway):
    client, upstream = gateway(payload_field="request")
    r = _post(
        client,
        {"model": "m", "messages": [{"role": "user", "content": "hi"}]},
        [("image", ("a.png", PNG, "image/png"))],
        field="request",
    )
    assert r.status_code == 200
    assert upstream.last_json["model"] == "m"


def test_unknown_image_file_reference(gateway):
    client, upstream = gateway()
    payload = {
        "model": "m",
        "messages": [
            {"role": "user", "content": [{"type": "image_file", "image_file": "missing"}]}
        ],
    }
    r = _post(client, payload, [("image", ("a.png", PNG, "image/png"))])
    assert r.status_code == 400
    assert r.json() == {"error": "Unknown attachment reference 'missing'"}
    assert upstream.calls == []


def test_form_urlencoded_body_is_rejected(gateway):
    client, upstream = gateway()
    r = client.post("/v1/chat/completions", data={"payload": "{}"})
    assert r.status_code == 400
    assert r.json() == {"error": "Unsupported content type"}
    assert upstream.calls == []


def test_non_standard_json_constant_in_payload_field(gateway):
    client, upstream = gateway()
    r = _post(
        client,
        '{"model": "m", "messages": [], "top_p": NaN}',
        [("image", ("a.png", PNG, "image/png"))],
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON in payload field"}
    assert upstream.calls == []


def test_payload_sent_as_file_part(gateway):
    client, upstream = gateway()
    payload = {"model": "vision-1", "messages": [{"role": "user", "content": "What is it?"}]}
    r = client.post(
        "/v1/chat/completions",
        files=[
            ("payload", ("request.json", json.dumps(payload).encode(), "application/json")),
            ("image", ("cat.png", PNG, "image/png")),
        ],
    )
    assert r.status_code == 200
    sent = upstream.last_json
    assert sent["model"] == "vision-1"
    assert sent["messages"][0]["content"][1]["image_url"]["url"] == _data_url("image/png", PNG)


def test_payload_file_part_must_be_utf8(gateway):
    client, upstream = gateway()
    r = client.post(
        "/v1/chat/completions",
        files=[("payload", ("request.json", b"\xff\xfe{}", "application/json"))],
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON in payload field"}
    assert upstream.calls == []
