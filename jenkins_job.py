#!/usr/bin/env python3
# Create, build, inspect and remove Jenkins jobs for local project directories,
# and register slave nodes, through the Jenkins REST API

__version__ = "0.4.0"

import os
import sys
import json
import argparse
import traceback
import configparser
import collections
import urllib.parse
from pprint import pprint, pformat

import requests
import yaml
from bs4 import BeautifulSoup
from requests.auth import HTTPBasicAuth

from job_config import JobConfigBuilder, ProjectScm, InvalidTemplateError, VALID_JOB_TEMPLATES, GEMFILE_TEMPLATES


#####################################################################
# Helpers
#####################################################################

Color = collections.namedtuple('Color', "reset red green yellow white grey ired igreen iyellow")
Color.__new__.__defaults__ = ("",) * len(Color._fields)
Style = collections.namedtuple('Style', "bold dim")
Style.__new__.__defaults__ = ("",) * len(Style._fields)
fg = Color()
style = Style()

ColorLog = collections.namedtuple('ColorLog', "send recv info note progress error warn ok url")
ColorLog.__new__.__defaults__ = ("",) * len(ColorLog._fields)
color = ColorLog()

def color_enable(force=False):
    global fg, style, color
    if force or (sys.stdout.isatty() and os.name != 'nt'):
        fg = Color(reset="\033[0m", red="\033[31m", green="\033[32m", yellow="\033[33m", white="\033[37m",
                   grey="\033[90m", ired="\033[91m", igreen="\033[92m", iyellow="\033[93m")
        style = Style(bold="\033[1m", dim="\033[2m")

        color = ColorLog(
            send=fg.igreen,
            recv=fg.green,
            info=fg.white + style.bold,
            note=fg.iyellow,
            progress=fg.white + style.dim,
            error=fg.ired,
            warn=fg.iyellow,
            ok=fg.green,
            url=fg.yellow,
        )

def normalize_options(options):
    """
    Turn an option mapping into a dict with plain attribute-style string keys

    Keys may arrive as argparse attribute names, as dashed option names
    ('--host', 'assigned-node') or even as bytes.

    >>> normalize_options({'--host': 'ci', b'port': 8080, 'node-labels': 'a'})
    {'host': 'ci', 'port': 8080, 'node_labels': 'a'}
    """
    if options is None:
        return {}
    if isinstance(options, argparse.Namespace):
        options = vars(options)
    d = {}
    for k, v in options.items():
        if isinstance(k, bytes):
            k = k.decode()
        d[str(k).lstrip("-").replace("-", "_")] = v
    return d

def split_list(s):
    """
    >>> split_list("1.9.3, 2.0 ,jruby")
    ['1.9.3', '2.0', 'jruby']
    """
    if not s:
        return []
    return [x.strip() for x in s.split(",") if x.strip()]

def derive_job_name(project_path):
    """
    Job name of project in ``project_path``: the base name of the directory

    >>> derive_job_name("/src/myapp/") == derive_job_name("/src/myapp") == "myapp"
    True
    """
    return os.path.basename(os.path.normpath(os.path.abspath(project_path)))


#####################################################################
# Errors and results
#####################################################################

class JenkinsException(Exception):
    pass

class ConfigurationError(JenkinsException):
    pass

class JenkinsConnectionError(JenkinsException):
    pass

class NotFoundError(JenkinsException):
    pass

class AlreadyExistsError(JenkinsException):
    pass

class ServerError(JenkinsException):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

class CommandError(JenkinsException):
    pass


class Result(collections.namedtuple('Result', "value error")):
    """
    Outcome of a Jenkins API operation: either a ``value`` or an ``error``
    (one of the JenkinsException subclasses above), never both
    """
    __slots__ = ()

    @property
    def ok(self):
        return self.error is None

Result.__new__.__defaults__ = (None, None)


NO_DEFAULT_HOST = "No default host yet. Use '--host host --port port' on your first request."


#####################################################################
# Configuration and endpoint resolution
#####################################################################

class Config(object):
    """
    Settings read from the INI file (section [global]). The only value
    written back is `base_uri`, which caches the last Jenkins server that
    was successfully talked to.
    """
    FILENAME = os.path.expanduser("~/.jenkins-job.ini")
    SECTION = "global"

    def __init__(self, filename=None):
        self._filename = filename or Config.FILENAME
        self._was_read = False
        self.base_uri = ""
        self.request_timeout = 30.0
        self.check_certificate = True
        self.auth_user = ""
        self.auth_password = ""

    def __str__(self):
        return f"<Config {self._filename} base_uri={self.base_uri}>"

    @property
    def filename(self):
        return self._filename

    @property
    def was_read(self):
        return self._was_read

    def settings(self):
        return [name for name in self.__dict__.keys() if not name.startswith("_")]

    def read(self):
        """
        :return: The filepath of the file that was read, None if there is no file
        """
        if not os.path.exists(self._filename):
            return None

        # ConfigParser stores values as strings, so you have to convert them yourself
        cfg = configparser.ConfigParser(interpolation=None)
        cfg.read(self._filename)

        section = Config.SECTION
        for name in self.settings():
            cur_value = getattr(self, name)
            try:
                if isinstance(cur_value, bool):
                    value = cfg.getboolean(section, name, fallback=cur_value)
                elif isinstance(cur_value, int):
                    value = cfg.getint(section, name, fallback=cur_value)
                elif isinstance(cur_value, float):
                    value = cfg.getfloat(section, name, fallback=cur_value)
                else:
                    value = cfg.get(section, name, fallback=cur_value)
                    # strip quotes from config value is string
                    value = value.strip('"')
            except ValueError:
                raise ConfigurationError(f"Bad value for '{name}' in {self._filename}")

            if value is not None:
                setattr(self, name, value)

        self._was_read = True
        return self._filename

    def cache_base_uri(self, base_uri):
        """
        Store ``base_uri`` in the config file, keeping all other settings in it
        """
        self.base_uri = base_uri
        cfg = configparser.ConfigParser(interpolation=None)
        cfg.read(self._filename)
        if not cfg.has_section(Config.SECTION):
            cfg.add_section(Config.SECTION)
        cfg.set(Config.SECTION, "base_uri", base_uri)

        dirname = os.path.dirname(self._filename)
        if dirname:
            os.makedirs(dirname, exist_ok=True)
        with open(self._filename, "w") as f:
            cfg.write(f)

    def write(self, out=None):
        out = out or sys.stdout
        d = {name: str(getattr(self, name)) for name in self.settings()}
        cfg = configparser.ConfigParser(interpolation=None)
        cfg[Config.SECTION] = d
        cfg.write(out)
        print("# base_uri is updated automatically after using --host/--port", file=out)


class Endpoint(collections.namedtuple('Endpoint', "scheme host port path")):
    """
    Jenkins server address. `base_uri` is what all API paths are appended to.
    """
    __slots__ = ()

    @property
    def base_uri(self):
        netloc = f"{self.host}:{self.port}" if self.port else self.host
        return f"{self.scheme}://{netloc}{self.path}"

    @staticmethod
    def parse_port(port):
        if port is None or port == "":
            return None
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid port '{port}'")
        if not 0 < port < 65536:
            raise ConfigurationError(f"Invalid port '{port}'")
        return port

    @classmethod
    def parse(cls, host, port=None):
        """
        Build an Endpoint from a host name that may carry a scheme, port and path,
        e.g. 'ci.lan', 'ci.lan:8080', 'https://ci.lan/jenkins/'.
        An explicit ``port`` takes precedence over one inside ``host``.
        """
        host = str(host).strip()
        scheme = "http"
        if "://" in host:
            scheme, host = host.split("://", 1)
        path = ""
        if "/" in host:
            host, path = host.split("/", 1)
            path = "/" + path.rstrip("/") if path.rstrip("/") else ""
        if ":" in host:
            host, host_port = host.rsplit(":", 1)
            if port is None or port == "":
                port = host_port
        if not host:
            raise ConfigurationError("Empty Jenkins host name")
        return cls(scheme.lower(), host, cls.parse_port(port), path)


class Resolution(collections.namedtuple('Resolution', "endpoint source")):
    """
    A resolved Endpoint and where it came from: 'options', 'environment' or 'config'
    """
    __slots__ = ()

    @property
    def cacheable(self):
        return self.source != 'config'


def resolve_endpoint(options=None, environ=None, cached_uri=None):
    """
    Order of preference is from highest to lowest: command line, environment, cached config

    :param options:    dict or argparse.Namespace possibly containing 'host' and 'port'
    :param environ:    environment mapping, default os.environ
    :param cached_uri: base URI cached by an earlier invocation
    :return:           Resolution or None when no Jenkins server is known
    """
    options = normalize_options(options)
    if environ is None:
        environ = os.environ

    opt_host = options.get('host')
    host = opt_host or environ.get('JENKINS_HOST') or environ.get('HUDSON_HOST')
    if opt_host:
        # the environment never overrides a port given or implied by --host
        port = options.get('port')
    else:
        port = options.get('port') or environ.get('JENKINS_PORT') or environ.get('HUDSON_PORT')

    if host:
        source = 'options' if opt_host else 'environment'
        return Resolution(Endpoint.parse(host, port), source)
    if cached_uri:
        return Resolution(Endpoint.parse(cached_uri), 'config')
    return None


#####################################################################
# Jenkins API
#####################################################################

SLAVE_TYPE = "hudson.slaves.DumbSlave$DescriptorImpl"

NodeDescriptor = collections.namedtuple('NodeDescriptor',
    "slave_host labels ssh_user ssh_port identity_file filesystem_root name description executors exclusive")

NODE_DEFAULTS = {
    'ssh_port': 22,
    'ssh_user': "deploy",
    'identity_file': "/home/deploy/.ssh/id_rsa",
    'filesystem_root': "/data/jenkins-slave/",
    'description': "Automatically created by jenkins-job",
    'executors': 2,
    'exclusive': True,
}

VAGRANT_NODE_DEFAULTS = dict(NODE_DEFAULTS,
    ssh_port=2222,
    ssh_user="vagrant",
    identity_file="/home/deploy/.vagrant.d/insecure_private_key",
    filesystem_root="/vagrant/tmp/jenkins-slave/",
)

def node_descriptor(slave_host, labels=None, ssh_user=None, ssh_port=None, identity_file=None,
                    filesystem_root=None, name=None, vagrant=False):
    """
    Make a NodeDescriptor, filling in defaults (Vagrant VM defaults if ``vagrant``)
    for every setting that is None

    :param labels: comma separated list of labels
    """
    d = dict(VAGRANT_NODE_DEFAULTS if vagrant else NODE_DEFAULTS)
    given = {
        'ssh_user': ssh_user,
        'ssh_port': ssh_port,
        'identity_file': identity_file,
        'filesystem_root': filesystem_root,
    }
    d.update({k: v for k, v in given.items() if v is not None})
    return NodeDescriptor(slave_host=slave_host, labels=split_list(labels), name=name or slave_host, **d)

def node_descriptor_json(node):
    """
    :return: the 'json' form field of a /computer/doCreateItem request
    """
    return {
        'name': node.name,
        'nodeDescription': node.description,
        'numExecutors': node.executors,
        'remoteFS': node.filesystem_root,
        'labelString': " ".join(node.labels),
        'mode': "EXCLUSIVE" if node.exclusive else "NORMAL",
        'type': SLAVE_TYPE,
        'retentionStrategy': {'stapler-class': "hudson.slaves.RetentionStrategy$Always"},
        'nodeProperties': {'stapler-class-bag': "true"},
        'launcher': {
            'stapler-class': "hudson.plugins.sshslaves.SSHLauncher",
            'host': node.slave_host,
            'port': node.ssh_port,
            'username': node.ssh_user,
            'privatekey': node.identity_file,
        },
    }


def extract_error_message(response):
    """
    Get a human readable message out of a Jenkins error response.

    Jenkins puts it in the X-Error header for some API errors. Otherwise the
    body is an HTML error page like::

        <td id="main-panel"><h1>Error</h1><p>Slave called 'foo' already exists</p>

    Falls back to the status code and reason when nothing readable is found.
    """
    fallback = f"HTTP {response.status_code} {response.reason or ''}".strip()
    message = response.headers.get('X-Error')
    if not message and response.text:
        soup = BeautifulSoup(response.text, "html.parser")
        node = soup.select_one("#main-panel p") or soup.find("body") or soup
        message = node.get_text(" ")
    message = " ".join((message or "").split())
    return message or fallback


class JenkinsApi(object):
    """
    Jenkins REST API client bound to one server Endpoint.

    Every operation does a single HTTP request and returns a Result. Nothing
    is raised for HTTP errors or transport failures: they come back as
    `Result.error`.

    [Remote Access API](https://www.jenkins.io/doc/book/using/remote-access-api/)
    """

    def __init__(self, endpoint, timeout=30.0, auth=None, check_certificate=True):
        self.endpoint = endpoint
        self.base_uri = endpoint.base_uri
        self.timeout = timeout
        self.auth = auth
        self.check_certificate = check_certificate

        # Set when any HTTP response was received from the server
        self.reachable = False

        self.log_req = False
        self.log_resp_status = False
        self.log_resp_headers = False
        self.log_resp_text = False
        self.log_resp_json = False

    def __str__(self):
        auth_user = self.auth[0] if self.auth else None
        return f"<JenkinsApi {self.base_uri} auth={auth_user}>"

    def log_enable(self, flags):
        self.log_req = 's' in flags
        self.log_resp_status = 'r' in flags
        self.log_resp_headers = 'h' in flags or 'rr' in flags
        self.log_resp_text = 't' in flags
        self.log_resp_json = 'j' in flags

    @staticmethod
    def get_log_help():
        return "s = send, r = response status, h = response headers, t = response text, j = response pretty json"

    def log_response(self, response):
        if self.log_resp_headers:
            print(f"{color.send}Request headers: {response.request.headers}{fg.reset}")
            print(f"{color.recv}Response: {response.status_code} {response.reason}\n{response.headers}{fg.reset}")
        elif self.log_resp_status:
            print(f"{color.recv}Response: {response.status_code} {response.reason}{fg.reset}")
        if self.log_resp_text:
            print(response.text)
        return response

    @staticmethod
    def job_path(name, suffix=""):
        return f"/job/{urllib.parse.quote(name, safe='')}{suffix}"

    def request(self, path, method="GET", params=None, **kwargs):
        """
        :param path: path relative to the server base URI, e.g. "/job/{name}/api/json"
        :return:     requests.Response object
        :raises:     requests.exceptions.RequestException on transport failure
        """
        url = self.base_uri + path
        auth = HTTPBasicAuth(*self.auth) if self.auth else None

        if self.log_req:
            q = "?" + urllib.parse.urlencode(params) if params else ""
            auth_str = f"with HTTPBasicAuth(username={self.auth[0]})" if auth else ""
            print(f"{color.send}{method} {url}{q}{fg.reset} {auth_str}")

        response = requests.request(method, url, params=params, auth=auth,
                                    timeout=self.timeout, verify=self.check_certificate, **kwargs)
        self.reachable = True
        return self.log_response(response)

    def send(self, path, method="GET", **kwargs):
        """
        Like request() but transport failures are returned instead of raised

        :return: tuple (response, None) or (None, JenkinsConnectionError)
        """
        try:
            return self.request(path, method=method, **kwargs), None
        except requests.exceptions.RequestException as e:
            return None, JenkinsConnectionError(f"Cannot reach Jenkins server at {self.base_uri}: {e}")

    def server_error(self, response):
        return ServerError(extract_error_message(response), response.status_code)

    def json_result(self, response):
        try:
            jr = response.json()
        except ValueError:
            return Result(error=ServerError(f"Invalid JSON in response from {response.url}", response.status_code))
        if self.log_resp_json:
            pprint(jr)
        return Result(jr)

    def create_job(self, name, config_xml):
        path = "/createItem/api/xml?" + urllib.parse.urlencode({'name': name})
        response, error = self.send(path, method="POST", data=config_xml.encode("utf-8"),
                                    headers={'Content-Type': "application/xml"})
        if error:
            return Result(error=error)
        if response.status_code == 200:
            return Result(True)

        message = extract_error_message(response)
        if response.status_code == 409 or (response.status_code == 400 and "already exists" in message.lower()):
            return Result(error=AlreadyExistsError(f"Job '{name}' already exists"))
        return Result(error=ServerError(message, response.status_code))

    def build_job(self, name):
        """
        :return: Result with URL of the queue item when Jenkins tells it, else True
        """
        response, error = self.send(self.job_path(name, "/build"), method="POST", allow_redirects=False)
        if error:
            return Result(error=error)
        if response.status_code in (200, 201, 302):
            return Result(response.headers.get('Location') or True)
        if response.status_code == 404:
            return Result(error=NotFoundError(f"No job '{name}' on server"))
        return Result(error=self.server_error(response))

    def delete_job(self, name):
        response, error = self.send(self.job_path(name, "/doDelete"), method="POST", allow_redirects=False)
        if error:
            return Result(error=error)
        if response.status_code in (200, 302):
            return Result(True)
        if response.status_code == 404:
            return Result(error=NotFoundError(f"No job '{name}' on server"))
        return Result(error=self.server_error(response))

    def fetch_job(self, name):
        response, error = self.send(self.job_path(name, "/api/json"))
        if error:
            return Result(error=error)
        if response.status_code == 404:
            return Result(error=NotFoundError(f"No job '{name}' on server"))
        if response.status_code != 200:
            return Result(error=self.server_error(response))
        return self.json_result(response)

    def fetch_summary(self):
        """
        :return: Result with dict like {'jobs': [{'name': 'myapp', 'color': 'blue'}, ...]}
        """
        response, error = self.send("/api/json")
        if error:
            return Result(error=error)
        if response.status_code != 200:
            return Result(error=self.server_error(response))
        return self.json_result(response)

    def list_nodes(self):
        """
        :return: Result with dict like {'computer': [{'displayName': 'master', 'offline': False}, ...]}
        """
        response, error = self.send("/computer/api/json")
        if error:
            return Result(error=error)
        if response.status_code != 200:
            return Result(error=self.server_error(response))
        return self.json_result(response)

    def add_node(self, node):
        """
        Register an SSH slave node

        :param node: NodeDescriptor
        :return:     Result with dict {'name': ..., 'slave_host': ...}
        """
        fields = {
            'name': node.name,
            'type': SLAVE_TYPE,
            'json': json.dumps(node_descriptor_json(node)),
        }
        response, error = self.send("/computer/doCreateItem", method="POST", data=fields, allow_redirects=False)
        if error:
            return Result(error=error)
        # Jenkins redirects to the node list on success; errors come back as a 200 HTML page
        if response.status_code == 302:
            return Result({'name': node.name, 'slave_host': node.slave_host})
        return Result(error=self.server_error(response))


#####################################################################
# Command line
#####################################################################

prog = "jenkins-job"

CreateOptions = collections.namedtuple('CreateOptions',
    "template rubies node_labels assigned_node no_build override scm scm_branches public_scm")

def create_options(opt):
    """
    Turn the parsed `create` command line into CreateOptions

    :param opt: argparse.Namespace or dict of options
    """
    o = normalize_options(opt)
    template = 'none' if o.get('no_template') else (o.get('template') or 'ruby')
    return CreateOptions(
        template=template,
        rubies=split_list(o.get('rubies')),
        node_labels=split_list(o.get('node_labels')),
        assigned_node=o.get('assigned_node') or None,
        no_build=bool(o.get('no_build')),
        override=bool(o.get('override')),
        scm=o.get('scm') or None,
        scm_branches=split_list(o.get('scm_branches') or "master"),
        public_scm=bool(o.get('public_scm')),
    )


class JenkinsCli(object):
    """
    Runs one command: resolves the Jenkins server, translates the command line
    and local project directory into API calls and prints the outcome.

    Each `cmd_*` method returns an exit code (None means 0) or raises a
    JenkinsException which dispatch() turns into an error message.
    """

    def __init__(self, config, environ=None, auth=None, verbose=0, log_flags=""):
        self.config = config
        self.environ = os.environ if environ is None else environ
        self.auth = auth
        self.verbose = verbose
        self.log_flags = log_flags
        self.resolution = None
        self.api = None

    def say(self, s, col=""):
        print(f"{col}{s}{fg.reset}" if col else s)

    def echo_verb(self, s, level=1):
        if self.verbose >= level:
            print(f"{color.info}{s}{fg.reset}")

    def select_server(self, opt):
        resolution = resolve_endpoint(opt, self.environ, self.config.base_uri)
        if not resolution:
            raise ConfigurationError(NO_DEFAULT_HOST)
        self.resolution = resolution
        self.api = JenkinsApi(resolution.endpoint, timeout=self.config.request_timeout, auth=self.auth,
                              check_certificate=self.config.check_certificate)
        self.api.log_enable(self.log_flags)
        self.echo_verb(f"Using Jenkins server {self.api.base_uri} (from {resolution.source})")
        return self.api

    def cache_endpoint(self):
        """
        Remember the server given with --host/--port or environment once it has answered
        """
        if not (self.api and self.api.reachable and self.resolution.cacheable):
            return
        base_uri = self.api.base_uri
        if base_uri == self.config.base_uri:
            return
        try:
            self.config.cache_base_uri(base_uri)
        except OSError as e:
            self.say(f"WARNING: Could not save default host to {self.config.filename}: {e}", color.warn)
            return
        self.echo_verb(f"Saved {base_uri} as default host in {self.config.filename}")

    def unreachable(self, error):
        self.say(f"{error}", color.warn)
        self.say(f"Check --host/--port or the default host in {self.config.filename}", color.warn)
        return 1

    @staticmethod
    def job_name(project_path):
        name = derive_job_name(project_path)
        if not name:
            raise CommandError(f"Cannot derive a job name from '{project_path}'.")
        return name

    @staticmethod
    def check(result, what):
        if result.error:
            raise CommandError(f"{what}: {result.error}")
        return result.value

    def dispatch(self, opt):
        command = getattr(self, "cmd_" + opt.command)
        try:
            return command(opt) or 0
        except JenkinsException as e:
            self.say(f"ERROR: {e}", color.error)
            return 1
        finally:
            self.cache_endpoint()

    def cmd_create(self, opt):
        api = self.select_server(opt)
        create = create_options(opt)
        project_path = opt.project_path
        if not os.path.isdir(project_path):
            raise CommandError(f"Project directory '{project_path}' does not exist.")
        name = self.job_name(project_path)

        try:
            builder = JobConfigBuilder(create.template)
        except InvalidTemplateError:
            raise CommandError(f"Invalid job template '{create.template}'.")

        scm = ProjectScm.discover(create.scm, path=project_path)
        if not scm:
            raise CommandError(f"Cannot determine project SCM. Currently supported: {', '.join(ProjectScm.supported)}")
        if create.template in GEMFILE_TEMPLATES and not os.path.exists(os.path.join(project_path, "Gemfile")):
            raise CommandError("Ruby/Rails projects without a Gemfile are currently unsupported.")

        builder.rubies = create.rubies
        builder.node_labels = create.node_labels
        builder.scm = scm.url
        builder.scm_branches = create.scm_branches
        builder.assigned_node = create.assigned_node
        builder.public_scm = create.public_scm
        config_xml = builder.to_xml()
        self.echo_verb(f"Job config for '{name}':\n{config_xml}", level=2)

        if create.override:
            result = api.delete_job(name)
            if not isinstance(result.error, NotFoundError):
                self.check(result, f"Failed to delete existing project '{name}'")

        result = api.create_job(name, config_xml)
        if isinstance(result.error, AlreadyExistsError):
            raise CommandError(f"Job '{name}' already exists.")
        self.check(result, f"Failed to create project '{name}'")

        template = "" if create.template == 'none' else f" {create.template}"
        self.say(f"Added{template} project '{name}' to Jenkins.", color.ok)
        if not create.no_build:
            self.say("Triggering initial build...")
            self.check(api.build_job(name), f"Failed to trigger initial build of '{name}'")
            self.say("Trigger additional builds via:")
        else:
            self.say("Trigger builds via:")
        self.say(f"  URL: {color.url}{api.base_uri}{api.job_path(name, '/build')}{fg.reset}")
        self.say(f"  CLI: {color.url}{prog} build {name}{fg.reset}")

    def cmd_build(self, opt):
        api = self.select_server(opt)
        name = self.job_name(opt.project_path)
        result = api.build_job(name)
        if isinstance(result.error, NotFoundError):
            raise CommandError(f"No job '{name}' on server.")
        self.check(result, f"Failed to trigger build of '{name}'")
        self.say(f"Build for '{name}' running now...")

    def cmd_remove(self, opt):
        api = self.select_server(opt)
        name = self.job_name(opt.project_path)
        result = api.delete_job(name)
        if isinstance(result.error, NotFoundError):
            raise CommandError(f"Failed to delete project '{name}'.")
        self.check(result, f"Failed to delete project '{name}'")
        self.say(f"Removed project '{name}' from Jenkins.")

    def cmd_job(self, opt):
        if not opt.format:
            raise CommandError("Select an output format: --json, --yaml, --hash")
        api = self.select_server(opt)
        result = api.fetch_job(opt.name)
        if isinstance(result.error, JenkinsConnectionError):
            return self.unreachable(result.error)
        if isinstance(result.error, NotFoundError):
            raise CommandError(f"Cannot find project '{opt.name}'.")
        job = self.check(result, f"Failed to get project '{opt.name}'")

        if opt.format == 'json':
            print(json.dumps(job, indent=2))
        elif opt.format == 'yaml':
            print(yaml.safe_dump(job, default_flow_style=False), end="")
        else:
            print(pformat(job))

    def cmd_list(self, opt):
        api = self.select_server(opt)
        result = api.fetch_summary()
        if isinstance(result.error, JenkinsConnectionError):
            return self.unreachable(result.error)
        summary = self.check(result, "Failed to list jobs")

        jobs = summary.get('jobs') or []
        if not jobs:
            self.say(f"{api.base_uri}: {color.warn}no jobs{fg.reset}")
            return
        self.say(f"{api.base_uri}:", style.bold)
        for job in jobs:
            job_color = job.get('color') or ""
            if "red" in job_color:
                col = fg.red
            elif "blue" in job_color or "green" in job_color:
                col = fg.green
            else:
                # grey, disabled, notbuilt, aborted
                col = fg.yellow
            if "anime" in job_color:
                col += style.bold
            self.say(f"* {col}{job.get('name')}{fg.reset}")
        self.say("")

    def cmd_nodes(self, opt):
        api = self.select_server(opt)
        result = api.list_nodes()
        if isinstance(result.error, JenkinsConnectionError):
            return self.unreachable(result.error)
        nodes = self.check(result, "Failed to list nodes")
        for node in nodes.get('computer') or []:
            self.say(node.get('displayName'), fg.red if node.get('offline') else fg.green)

    def cmd_add_node(self, opt):
        api = self.select_server(opt)
        node = node_descriptor(opt.slave_host, labels=opt.labels, ssh_user=opt.slave_user, ssh_port=opt.slave_port,
                               identity_file=opt.master_key, filesystem_root=opt.slave_fs, name=opt.name,
                               vagrant=opt.vagrant)
        added = self.check(api.add_node(node), f"Failed to add slave node {opt.slave_host}")
        self.say(f"Added slave node '{added['name']}' to {added['slave_host']}", color.ok)

    def cmd_default_host(self, opt):
        resolution = resolve_endpoint({}, self.environ, self.config.base_uri)
        if not resolution:
            raise ConfigurationError(NO_DEFAULT_HOST)
        self.say(resolution.endpoint.base_uri)

    def cmd_version(self, opt):
        self.say(__version__)

    def cmd_help(self, opt):
        parser = parser_create()
        if not opt.topic:
            parser.print_help()
            return
        if opt.topic not in parser.commands:
            raise CommandError(f"Unknown command '{opt.topic}'")
        parser.commands[opt.topic].print_help()


def add_server_options(parser):
    group = parser.add_argument_group("Server options")
    group.add_argument('--host', dest='host', metavar='HOST', default=None,
        help="Connect to jenkins server on this host")
    group.add_argument('--port', dest='port', metavar='PORT', default=None,
        help="Connect to jenkins server on this port")

def parser_create():
    description = f"""\
Smart set of utilities for making continuous integration as simple as possible:
create, build, inspect and remove Jenkins jobs for local project directories

Configuration is read from {Config.FILENAME}
"""
    epilog = f"""
See command-line examples with: {prog} -hh
"""
    parser = argparse.ArgumentParser(prog=prog,
        description=description, epilog=epilog, add_help=False, formatter_class=argparse.RawDescriptionHelpFormatter)

    option_args = parser.add_argument_group("Misc options")
    option_args.add_argument('-d', dest='log_http', metavar='srhtj', default="",
        help='Log HTTP transactions: ' + JenkinsApi.get_log_help())
    option_args.add_argument('--config', dest='config_file', metavar="FILE", default=None,
        help=f"Configuration file. Default is {Config.FILENAME}")
    option_args.add_argument('--auth', dest='auth', metavar="NAME_TOK", default=None,
        help="Username and API token, separated by colon. Default is JENKINS_AUTH from environment")
    option_args.add_argument('--makeconf', dest='write_config', action='store_true',
        help='Write a configuration file template')
    option_args.add_argument('--version', dest='show_version', action='store_true',
        help='Show version information')
    option_args.add_argument('-v', dest='verbose', action='count', default=0,
        help='Be more verbose')
    option_args.add_argument('-h', dest='help', action='count', default=0,
        help='Show usage. Give option twice to see usage examples')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND', title="Commands")

    p = subparsers.add_parser('create', help="Create a build job for your project")
    p.add_argument('project_path', metavar='PROJECT_PATH')
    p.add_argument('--rubies', metavar='R',
        help="Run tests against multiple explicit rubies via RVM (comma separated)")
    p.add_argument('--node-labels', dest='node_labels', metavar='L',
        help="Run tests against multiple slave nodes by their label (comma separated)")
    p.add_argument('--assigned-node', dest='assigned_node', metavar='N',
        help="Only use slave nodes with this label (similar to --node-labels)")
    p.add_argument('--no-build', dest='no_build', action='store_true',
        help="Create job without initial build")
    p.add_argument('--override', action='store_true',
        help="Override if job exists")
    p.add_argument('--scm', metavar='URI',
        help="Specific SCM URI")
    p.add_argument('--scm-branches', dest='scm_branches', metavar='B', default="master",
        help="List of branches to build from (comma separated). Default is master")
    p.add_argument('--public-scm', dest='public_scm', action='store_true',
        help="Use public scm URL")
    template = p.add_mutually_exclusive_group()
    template.add_argument('--template', default='ruby',
        help=f"Template of job steps (available: {','.join(VALID_JOB_TEMPLATES)})")
    template.add_argument('--no-template', dest='no_template', action='store_true',
        help="Do not use a template of default steps; avoids Gemfile requirement")
    add_server_options(p)

    p = subparsers.add_parser('build', help="Trigger build of this project's build job")
    p.add_argument('project_path', metavar='PROJECT_PATH', nargs='?', default=".")
    add_server_options(p)

    p = subparsers.add_parser('remove', help="Remove this project's build job from Jenkins")
    p.add_argument('project_path', metavar='PROJECT_PATH')
    add_server_options(p)

    p = subparsers.add_parser('job', help="Display job details")
    p.add_argument('name', metavar='NAME')
    formats = p.add_mutually_exclusive_group()
    formats.add_argument('--json', dest='format', action='store_const', const='json',
        help="Dump as JSON format")
    formats.add_argument('--yaml', dest='format', action='store_const', const='yaml',
        help="Dump as YAML format")
    formats.add_argument('--hash', dest='format', action='store_const', const='hash',
        help="Dump as formatted Python dict")
    add_server_options(p)

    p = subparsers.add_parser('list', help="List jobs on a jenkins server")
    add_server_options(p)

    p = subparsers.add_parser('nodes', help="List jenkins server nodes")
    add_server_options(p)

    p = subparsers.add_parser('add_node', help="Add a server as a slave node")
    p.add_argument('slave_host', metavar='SLAVE_HOST')
    p.add_argument('--labels', metavar='L',
        help="Labels for a job --assigned-node to match against to select a slave (comma separated)")
    p.add_argument('--slave-user', dest='slave_user', metavar='U',
        help="SSH user for Jenkins to connect to slave node (default: deploy)")
    p.add_argument('--slave-port', dest='slave_port', metavar='P', type=int,
        help="SSH port for Jenkins to connect to slave node (default: 22)")
    p.add_argument('--master-key', dest='master_key', metavar='K',
        help="Location of master public key or identity file")
    p.add_argument('--slave-fs', dest='slave_fs', metavar='F',
        help="Location of file system on slave for Jenkins to use")
    p.add_argument('--name', metavar='N',
        help="Name of slave node (default SLAVE_HOST)")
    p.add_argument('--vagrant', action='store_true',
        help="Use settings for a Vagrant VM")
    add_server_options(p)

    subparsers.add_parser('default_host', help="Display current default host:port URI")
    subparsers.add_parser('version', help="Show version information")
    p = subparsers.add_parser('help', help="Show help for jenkins-job or for a specific command")
    p.add_argument('topic', metavar='COMMAND', nargs='?')

    parser.commands = subparsers.choices
    return parser

def print_examples():
    print(f"""\
{prog} command-line examples:

Write default/template configuration:
  {prog} --makeconf > ${{HOME}}/.jenkins-job.ini
Create a job for the project in the current directory and build it:
  {prog} create . --host ci.lan --port 8080
Create a job without the initial build, testing two rubies:
  {prog} create ~/src/myapp --rubies 2.7,3.2 --no-build
Trigger a build of the current directory's job:
  {prog} build
Dump job details as YAML:
  {prog} job myapp --yaml
Register a slave node:
  {prog} add_node build1.lan --labels linux,docker --slave-user jenkins

The --host/--port given on first successful use are remembered as default host.
JENKINS_HOST and JENKINS_PORT from environment take precedence over the default host.
""")

def main(argv=None, environ=None):
    """
    :return: process exit code
    """
    if environ is None:
        environ = os.environ
    parser = parser_create()
    opt = parser.parse_args(argv)
    if opt.help:
        if opt.help == 2:
            print_examples()
        else:
            parser.print_help()
        return 0
    elif opt.write_config:
        Config().write()
        return 0
    elif opt.show_version:
        print(__version__)
        return 0
    elif not opt.command:
        parser.print_help()
        return 1

    def print_traceback_tip():
        if 'd' in opt.log_http:
            traceback.print_exc()
        else:
            print(f"{fg.yellow}Tip: add -dd command-line option to see traceback{fg.reset}")

    color_enable()

    try:
        config = Config(opt.config_file)
        conffile = config.read()

        # Order of preference is from highest to lowest: commandline, environment, config
        auth = opt.auth or environ.get("JENKINS_AUTH")
        if not auth and config.auth_user:
            auth = f"{config.auth_user}:{config.auth_password}"
        if auth:
            user_passwd = auth.split(":", 1)
            if len(user_passwd) != 2:
                raise ValueError("User name and API token must be separated by colon")
            auth = tuple(user_passwd)

        cli = JenkinsCli(config, environ=environ, auth=auth or None, verbose=opt.verbose,
                         log_flags="srr" + opt.log_http if opt.verbose >= 2 else opt.log_http)
        if conffile:
            cli.echo_verb(f"Read config from {conffile}")

        return cli.dispatch(opt)

    except (JenkinsException, ValueError) as e:
        print(f"{color.error}ERROR: {e}{fg.reset}")
        print_traceback_tip()
        return 1
    except KeyboardInterrupt:
        print(f"{color.error}User abort{fg.reset}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
