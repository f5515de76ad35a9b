import re

import pytest
from botocore.exceptions import ClientError

import config
import storage


class FakeS3:
    def __init__(self):
        self.deleted = []
        self.fail_delete = False

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://r2.example.com/{Params['Bucket']}/{Params['Key']}?op={operation}&expires={ExpiresIn}"

    def delete_object(self, Bucket, Key):
        if self.fail_delete:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DeleteObject")
        self.deleted.append((Bucket, Key))


@pytest.fixture
def s3(monkeypatch):
    fake = FakeS3()
    monkeypatch.setattr(storage, "get_client", lambda: fake)
    monkeypatch.setattr(config, "R2_BUCKET_NAME", "marketplace")
    monkeypatch.setattr(config, "R2_PUBLIC_URL", "https://cdn.example.com/")
    return fake


def test_folder_for():
    assert storage.folder_for("image/png", "store-cover.png") == "cover"
    assert storage.folder_for("image/jpeg", "product_front.jpg") == "products"
    assert storage.folder_for("application/pdf", "invoice") == "pdfs"
    assert storage.folder_for("image/jpeg", "me.jpg") == "profile"


def test_key_from_url():
    assert storage.key_from_url("https://cdn.example.com/merchant/abc/products/x%20y.jpg") == "merchant/abc/products/x y.jpg"


def test_upload_url(client, merchant, s3):
    user, headers, _ = merchant
    resp = client.post("/api/v1/upload/url", headers=headers, json={"file_type": "image/jpeg", "file_name": "product-1.JPG"})
    assert resp.status_code == 200
    body = resp.json()
    assert re.match(rf"^merchant/{user['_id']}/products/[0-9a-f-]{{36}}\.jpg$", body["key"])
    assert body["file_url"] == f"https://cdn.example.com/{body['key']}"
    assert body["upload_url"].startswith("https://r2.example.com/marketplace/")
    assert body["expires_in"] == 3600


def test_upload_url_validation(client, customer, s3):
    _, headers = customer
    resp = client.post("/api/v1/upload/url", headers=headers, json={"file_type": "image/png"})
    assert resp.json()["message"] == "File type and name are required"
    resp = client.post("/api/v1/upload/url", headers=headers, json={"file_type": "text/html", "file_name": "x.html"})
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("File type not supported. Allowed types: image/jpeg")


def test_batch_upload_urls(client, customer, s3):
    _, headers = customer
    files = [{"file_type": "image/png", "file_name": f"look-{i}.png"} for i in range(3)]
    body = client.post("/api/v1/upload/urls", headers=headers, json={"files": files}).json()
    assert body["message"] == "Generated 3 upload URL(s)"
    assert all(u["key"].startswith("user/") for u in body["uploads"])

    too_many = [{"file_type": "image/png", "file_name": "a.png"}] * 11
    assert client.post("/api/v1/upload/urls", headers=headers, json={"files": too_many}).status_code == 400


def test_delete_file(client, customer, s3):
    _, headers = customer
    url = "https://cdn.example.com/user/abc/profile/pic.png"
    resp = client.request("DELETE", "/api/v1/upload/file", headers=headers, json={"file_url": url})
    assert resp.status_code == 200
    assert s3.deleted == [("marketplace", "user/abc/profile/pic.png")]

    s3.fail_delete = True
    resp = client.request("DELETE", "/api/v1/upload/file", headers=headers, json={"file_url": url})
    assert resp.status_code == 500
    assert resp.json()["message"] == "Failed to delete file"

    resp = client.request("DELETE", "/api/v1/upload/file", headers=headers, json={})
    assert resp.json()["message"] == "File URL is required"
