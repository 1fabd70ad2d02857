"""
Tests for pkgregistry/validation.py.

Covers package name and version rules, aggregation of upload field errors,
tag parsing, and the Flask request guard.
"""

import io

import pytest
from flask import Flask, jsonify

from pkgregistry.models import UploadRequest
from pkgregistry.validation import (
    init_validation,
    is_valid_package_name,
    is_valid_version,
    parse_tags,
    validate_upload_request,
)


class TestPackageName:
    @pytest.mark.parametrize("name", ["demo", "my-package", "my_package", "Pkg123", "a" * 100])
    def test_valid_names(self, name):
        assert is_valid_package_name(name) is True

    @pytest.mark.parametrize(
        "name",
        ["", "   ", None, "a" * 101, "../etc", "a..b", "a/b", "a\\b", "a.b", "name with space", "pkg:1", "pkg*"],
    )
    def test_invalid_names(self, name):
        assert is_valid_package_name(name) is False


class TestVersion:
    @pytest.mark.parametrize("version", ["0.0.0", "1.0.0", "10.20.30"])
    def test_valid_versions(self, version):
        assert is_valid_version(version) is True

    @pytest.mark.parametrize("version", ["", " ", None, "1.0", "1.0.0.0", "v1.0.0", "1.0.0-beta", "1.a.0"])
    def test_invalid_versions(self, version):
        assert is_valid_version(version) is False


class TestUploadRequestValidation:
    def _upload(self, **overrides):
        fields = {
            "name": "demo",
            "version": "1.0.0",
            "description": "ok",
            "tags": ["a"],
            "filename": "demo.zip",
            "content_type": "application/zip",
            "stream": io.BytesIO(b"data"),
        }
        fields.update(overrides)
        return UploadRequest(**fields)

    def test_valid_request(self):
        result = validate_upload_request(self._upload())
        assert result.is_valid is True
        assert result.errors == []

    def test_missing_name_and_version(self):
        result = validate_upload_request(self._upload(name="", version=""))
        assert result.is_valid is False
        assert result.errors == ["Package name is required", "Version is required"]

    def test_invalid_name_and_version_format(self):
        result = validate_upload_request(self._upload(name="bad/name", version="1.0"))
        assert result.errors == [
            "Invalid package name format",
            "Version must follow semantic versioning (e.g., 1.0.0)",
        ]

    def test_description_too_long(self):
        result = validate_upload_request(self._upload(description="x" * 1001))
        assert result.errors == ["Description too long (max 1000 characters)"]

    def test_description_at_limit_is_accepted(self):
        assert validate_upload_request(self._upload(description="x" * 1000)).is_valid

    def test_tag_limits(self):
        result = validate_upload_request(self._upload(tags=[f"t{i}" for i in range(11)]))
        assert result.errors == ["Too many tags (max 10)"]
        result = validate_upload_request(self._upload(tags=["x" * 51]))
        assert result.errors == ["Tag too long (max 50 characters each)"]

    def test_missing_file(self):
        result = validate_upload_request(self._upload(stream=None, filename=None, content_type=None))
        assert result.errors == ["Package file is required"]

    @pytest.mark.parametrize(
        "filename,content_type",
        [("demo.tar.gz", "application/zip"), ("demo.zip", "application/octet-stream"), ("demo", "application/zip")],
    )
    def test_wrong_file_type(self, filename, content_type):
        result = validate_upload_request(self._upload(filename=filename, content_type=content_type))
        assert result.errors == ["Only .zip files are allowed"]

    def test_uppercase_extension_is_accepted(self):
        assert validate_upload_request(self._upload(filename="DEMO.ZIP")).is_valid

    def test_errors_are_aggregated_in_order(self):
        result = validate_upload_request(
            UploadRequest(name="", version="x", description="d" * 2000, tags=["t"] * 12, stream=None)
        )
        assert result.errors == [
            "Package name is required",
            "Version must follow semantic versioning (e.g., 1.0.0)",
            "Description too long (max 1000 characters)",
            "Too many tags (max 10)",
            "Package file is required",
        ]


class TestParseTags:
    def test_splits_and_drops_empty(self):
        assert parse_tags("a,,b,") == ["a", "b"]

    def test_empty(self):
        assert parse_tags("") == []
        assert parse_tags(None) == []


class TestRequestGuard:
    def setup_method(self):
        self.app = Flask(__name__)
        self.app.config.update(MAX_CONTENT_LENGTH=10, MAX_QUERY_PARAM_LENGTH=5)
        init_validation(self.app)

        @self.app.route("/echo/<value>", methods=["GET", "POST"])
        def echo(value):
            return jsonify({"value": value})

        self.client = self.app.test_client()

    def test_passes_normal_request(self):
        assert self.client.get("/echo/ok").status_code == 200

    def test_rejects_large_payload(self):
        response = self.client.post("/echo/ok", data=b"x" * 11)
        assert response.status_code == 413

    def test_rejects_long_query_param(self):
        response = self.client.get("/echo/ok?search=abcdefg")
        assert response.status_code == 400
        assert "search" in response.get_json()["error"]

    def test_rejects_long_path_param(self):
        response = self.client.get("/echo/" + "a" * 300)
        assert response.status_code == 400
