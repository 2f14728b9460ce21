"""
Shared fixtures.

HTTP is faked by patching ``requests.request`` with real ``requests.Response``
objects built by the ``make_response`` factory.
"""

import http
import json
from unittest.mock import patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict


BASE_URI = "http://ci.example.com:8080"


@pytest.fixture
def make_response():
    """Factory for canned requests.Response objects."""

    def _make(status_code=200, json_data=None, text="", headers=None, url=BASE_URI + "/"):
        response = requests.Response()
        response.status_code = status_code
        response.reason = http.HTTPStatus(status_code).phrase
        if json_data is not None:
            text = json.dumps(json_data)
        response._content = text.encode("utf-8")
        response.encoding = "utf-8"
        response.headers = CaseInsensitiveDict(headers or {})
        response.url = url
        return response

    return _make


@pytest.fixture
def mock_request():
    """Patch the single HTTP entry point used by the Jenkins client."""
    with patch("jenkins_job.requests.request") as mocked:
        yield mocked


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "jenkins-job.ini"


@pytest.fixture
def project_dir(tmp_path):
    """A ruby project directory called 'myapp' with a Gemfile."""
    path = tmp_path / "src" / "myapp"
    path.mkdir(parents=True)
    (path / "Gemfile").write_text("source 'https://rubygems.org'\n")
    return path
