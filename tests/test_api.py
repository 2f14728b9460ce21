"""Unit tests for the Jenkins REST API client."""

import json

import pytest
import requests

from jenkins_job import (
    AlreadyExistsError,
    Endpoint,
    JenkinsApi,
    JenkinsConnectionError,
    NotFoundError,
    Result,
    ServerError,
    extract_error_message,
    node_descriptor,
)


ERROR_PAGE = """\
<html><head><title>Error</title></head>
<body><table><tr>
<td id="main-panel"><h1>Error</h1><p>Slave called 'build1'
   already exists</p></td>
</tr></table></body></html>
"""


@pytest.fixture
def api() -> JenkinsApi:
    return JenkinsApi(Endpoint.parse("ci.example.com", 8080), timeout=5.0)


class TestResult:

    def test_ok(self) -> None:
        assert Result(True).ok
        assert not Result(error=NotFoundError("x")).ok
        assert Result().value is None


class TestExtractErrorMessage:

    def test_x_error_header(self, make_response) -> None:
        response = make_response(400, text="<html/>", headers={"X-Error": "A job already exists with the name 'a'"})
        assert extract_error_message(response) == "A job already exists with the name 'a'"

    def test_main_panel(self, make_response) -> None:
        response = make_response(200, text=ERROR_PAGE)
        assert extract_error_message(response) == "Slave called 'build1' already exists"

    def test_body_text(self, make_response) -> None:
        response = make_response(500, text="<html><body><h2>Oops</h2> broken</body></html>")
        assert extract_error_message(response) == "Oops broken"

    def test_fallback_to_status(self, make_response) -> None:
        response = make_response(500, text="")
        assert extract_error_message(response) == "HTTP 500 Internal Server Error"


class TestCreateJob:

    def test_success(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(200)

        result = api.create_job("my app", "<project/>")

        assert result == Result(True)
        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://ci.example.com:8080/createItem/api/xml?name=my+app")
        assert kwargs["data"] == b"<project/>"
        assert kwargs["headers"] == {"Content-Type": "application/xml"}
        assert kwargs["timeout"] == 5.0
        assert api.reachable

    def test_second_create_already_exists(self, api, mock_request, make_response) -> None:
        """Creating the same job twice reports the collision on the second call."""
        mock_request.side_effect = [
            make_response(200),
            make_response(400, headers={"X-Error": "A job already exists with the name 'myapp'"}),
        ]

        assert api.create_job("myapp", "<project/>").ok
        result = api.create_job("myapp", "<project/>")

        assert isinstance(result.error, AlreadyExistsError)

    def test_conflict_status(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(409)
        assert isinstance(api.create_job("myapp", "<project/>").error, AlreadyExistsError)

    def test_server_error_message(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(
            500, text='<html><body><div id="main-panel"><p>Unable to parse config.xml</p></div></body></html>')

        result = api.create_job("myapp", "<project/>")

        assert isinstance(result.error, ServerError)
        assert result.error.message == "Unable to parse config.xml"
        assert result.error.status_code == 500

    def test_unreachable(self, api, mock_request) -> None:
        mock_request.side_effect = requests.exceptions.ConnectionError("refused")

        result = api.create_job("myapp", "<project/>")

        assert isinstance(result.error, JenkinsConnectionError)
        assert not api.reachable


class TestBuildJob:

    def test_queued(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(
            201, headers={"Location": "http://ci.example.com:8080/queue/item/7/"})

        result = api.build_job("myapp")

        assert result.value == "http://ci.example.com:8080/queue/item/7/"
        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://ci.example.com:8080/job/myapp/build")
        assert kwargs["allow_redirects"] is False

    def test_redirect_without_location(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(302)
        assert api.build_job("myapp").value is True

    def test_not_found(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(404)
        assert isinstance(api.build_job("myapp").error, NotFoundError)

    def test_name_is_quoted(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(201)
        api.build_job("my app")
        assert mock_request.call_args[0][1] == "http://ci.example.com:8080/job/my%20app/build"


class TestDeleteJob:

    def test_deleted(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(302)

        assert api.delete_job("myapp").ok
        assert mock_request.call_args[0] == ("POST", "http://ci.example.com:8080/job/myapp/doDelete")

    def test_not_found(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(404)
        assert isinstance(api.delete_job("myapp").error, NotFoundError)

    def test_forbidden(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(403)
        result = api.delete_job("myapp")
        assert isinstance(result.error, ServerError)
        assert result.error.status_code == 403


class TestFetch:

    def test_fetch_job(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(200, json_data={"name": "myapp", "color": "blue"})

        result = api.fetch_job("myapp")

        assert result.value == {"name": "myapp", "color": "blue"}
        assert mock_request.call_args[0] == ("GET", "http://ci.example.com:8080/job/myapp/api/json")

    def test_fetch_job_not_found(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(404)
        assert isinstance(api.fetch_job("nope").error, NotFoundError)

    def test_fetch_job_unreachable(self, api, mock_request) -> None:
        mock_request.side_effect = requests.exceptions.ConnectTimeout("timed out")
        assert isinstance(api.fetch_job("myapp").error, JenkinsConnectionError)

    def test_fetch_summary(self, api, mock_request, make_response) -> None:
        summary = {"jobs": [{"name": "myapp", "color": "blue"}]}
        mock_request.return_value = make_response(200, json_data=summary)

        assert api.fetch_summary().value == summary
        assert mock_request.call_args[0] == ("GET", "http://ci.example.com:8080/api/json")

    def test_fetch_summary_unreachable(self, api, mock_request) -> None:
        """Transport failures come back in the result instead of being raised."""
        mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

        result = api.fetch_summary()

        assert isinstance(result.error, JenkinsConnectionError)
        assert "http://ci.example.com:8080" in str(result.error)

    def test_invalid_json(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(200, text="<html>login</html>")
        assert isinstance(api.fetch_summary().error, ServerError)

    def test_list_nodes(self, api, mock_request, make_response) -> None:
        nodes = {"computer": [{"displayName": "master", "offline": False}]}
        mock_request.return_value = make_response(200, json_data=nodes)

        assert api.list_nodes().value == nodes
        assert mock_request.call_args[0] == ("GET", "http://ci.example.com:8080/computer/api/json")


class TestAddNode:

    def test_added(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(302)
        node = node_descriptor("build1.lan", labels="linux, docker", ssh_user="jenkins")

        result = api.add_node(node)

        assert result.value == {"name": "build1.lan", "slave_host": "build1.lan"}
        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://ci.example.com:8080/computer/doCreateItem")
        fields = kwargs["data"]
        assert fields["name"] == "build1.lan"
        assert fields["type"] == "hudson.slaves.DumbSlave$DescriptorImpl"
        node_json = json.loads(fields["json"])
        assert node_json["labelString"] == "linux docker"
        assert node_json["mode"] == "EXCLUSIVE"
        assert node_json["launcher"]["username"] == "jenkins"
        assert node_json["launcher"]["port"] == 22

    def test_error_page(self, api, mock_request, make_response) -> None:
        mock_request.return_value = make_response(200, text=ERROR_PAGE)

        result = api.add_node(node_descriptor("build1"))

        assert isinstance(result.error, ServerError)
        assert str(result.error) == "Slave called 'build1' already exists"


class TestNodeDescriptor:

    def test_defaults(self) -> None:
        node = node_descriptor("build1.lan")
        assert node.name == "build1.lan"
        assert node.ssh_user == "deploy"
        assert node.ssh_port == 22
        assert node.labels == []

    def test_vagrant_defaults_with_override(self) -> None:
        node = node_descriptor("localhost", vagrant=True, ssh_port=2200, name="vm")
        assert node.name == "vm"
        assert node.ssh_user == "vagrant"
        assert node.ssh_port == 2200
        assert node.filesystem_root == "/vagrant/tmp/jenkins-slave/"
