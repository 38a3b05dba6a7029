import re
from unittest.mock import patch

from botocore.exceptions import ClientError

PDF_BYTES = b"%PDF-1.4\n1 0 obj<</Type/Catalog>>endobj\n%%EOF"


@patch("materials_api.routes.upload.s3_service")
def test_upload_valid_pdf(mock_s3, client):
    mock_s3.upload.return_value = "https://bucket.s3.us-east-1.amazonaws.com/key.pdf"

    response = client.post(
        "/api/upload",
        files={"file": ("Calculus Notes.pdf", PDF_BYTES, "application/pdf")},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["url"] == "https://bucket.s3.us-east-1.amazonaws.com/key.pdf"
    assert data["originalName"] == "Calculus Notes.pdf"
    assert re.fullmatch(r"\d{13}_[0-9a-z]{13}\.pdf", data["filename"])
    assert data["size"] == len(PDF_BYTES)
    assert data["type"] == "application/pdf"

    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "10"
    assert "X-RateLimit-Reset" in response.headers

    args, kwargs = mock_s3.upload.call_args
    assert args[0] == PDF_BYTES
    assert args[1] == data["filename"]
    assert args[2] == "application/pdf"
    assert kwargs["metadata"]["original-filename"] == "Calculus%20Notes.pdf"
    assert kwargs["metadata"]["file-size"] == str(len(PDF_BYTES))


def test_upload_rejects_no_file(client):
    response = client.post("/api/upload")
    assert response.status_code == 422


@patch("materials_api.routes.upload.s3_service")
def test_malformed_upload_costs_no_quota(mock_s3, client):
    mock_s3.upload.return_value = "https://bucket.s3.us-east-1.amazonaws.com/key.pdf"

    # FastAPI answers 422 before the rate limiter runs.
    for _ in range(12):
        assert client.post("/api/upload").status_code == 422

    response = client.post(
        "/api/upload",
        files={"file": ("notes.pdf", PDF_BYTES, "application/pdf")},
    )
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "10"


@patch("materials_api.routes.upload.s3_service")
def test_upload_rejects_invalid_type(mock_s3, client):
    response = client.post(
        "/api/upload",
        files={"file": ("script.sh", b"#!/bin/bash\necho hi", "text/x-shellscript")},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "File validation failed"
    assert response.json()["details"].startswith("File extension not allowed")
    mock_s3.upload.assert_not_called()


@patch("materials_api.routes.upload.s3_service")
def test_upload_rejects_renamed_executable(mock_s3, client):
    response = client.post(
        "/api/upload",
        files={"file": ("notes.pdf", b"MZ\x90\x00\x03\x00\x00\x00", "application/pdf")},
    )
    assert response.status_code == 400
    assert response.json() == {
        "error": "File validation failed",
        "details": "Executable files are not allowed",
    }
    mock_s3.upload.assert_not_called()


@patch("materials_api.routes.upload.s3_service")
def test_upload_storage_failure(mock_s3, client):
    mock_s3.upload.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
    )

    response = client.post(
        "/api/upload",
        files={"file": ("notes.pdf", PDF_BYTES, "application/pdf")},
    )

    assert response.status_code == 500
    assert response.json()["error"] == "Upload failed"
    assert "AccessDenied" in response.json()["details"]


@patch("materials_api.routes.upload.s3_service")
def test_upload_is_rate_limited(mock_s3, client):
    mock_s3.upload.return_value = "https://bucket.s3.us-east-1.amazonaws.com/key.pdf"
    files = {"file": ("notes.pdf", PDF_BYTES, "application/pdf")}

    for _ in range(10):
        assert client.post("/api/upload", files=files).status_code == 200

    response = client.post("/api/upload", files=files)
    assert response.status_code == 429
    assert response.json()["error"] == "Rate limit exceeded"
    assert int(response.headers["Retry-After"]) > 0
    assert mock_s3.upload.call_count == 10

    # A different client keeps its own quota.
    other = client.post("/api/upload", files=files, headers={"X-Forwarded-For": "198.51.100.20"})
    assert other.status_code == 200


def test_health_check(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
