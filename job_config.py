#!/usr/bin/env python3
# Build Jenkins job config.xml for a project directory and discover its SCM

import os
import re
import subprocess
import xml.dom.minidom as minidom


class InvalidTemplateError(ValueError):
    pass


#####################################################################
# Job templates
#####################################################################

BUNDLE_INSTALL = "bundle install"
RAKE = "bundle exec rake"
DATABASE_YML = """\
if [ ! -f config/database.yml ] && [ -f config/database.yml.example ]; then
  cp config/database.yml.example config/database.yml
fi"""

# Shell build steps for each template, in execution order
JOB_TEMPLATE_STEPS = {
    'none':    [],
    'ruby':    [BUNDLE_INSTALL, RAKE],
    'rubygem': [BUNDLE_INSTALL, RAKE],
    'rails':   [BUNDLE_INSTALL, DATABASE_YML, "bundle exec rake db:create:all",
                "bundle exec rake db:schema:load", RAKE],
    'rails3':  [BUNDLE_INSTALL, DATABASE_YML, "bundle exec rake db:create:all",
                "bundle exec rake db:schema:load", RAKE],
    'erlang':  ["rebar get-deps compile", "rebar skip_deps=true eunit"],
}

VALID_JOB_TEMPLATES = sorted(JOB_TEMPLATE_STEPS)

# Templates that drive the build through bundler
GEMFILE_TEMPLATES = ('ruby', 'rubygem', 'rails', 'rails3')


def xml_add_text_element(doc, parent, tag, text=""):
    node = doc.createElement(tag)
    if text != "":
        node.appendChild(doc.createTextNode(str(text)))
    parent.appendChild(node)
    return node


def public_scm_url(url):
    """
    Rewrite an SSH style git URL into its anonymous https equivalent

    >>> public_scm_url("git@github.com:drnic/jenkins.rb.git")
    'https://github.com/drnic/jenkins.rb.git'
    >>> public_scm_url("https://github.com/drnic/jenkins.rb.git")
    'https://github.com/drnic/jenkins.rb.git'
    """
    m = re.match(r"^(?:ssh://)?[\w.-]+@([\w.-]+)[:/](.+)$", url)
    if m:
        return f"https://{m.group(1)}/{m.group(2)}"
    return url


class JobConfigBuilder(object):
    """
    Generate the config.xml of a Jenkins job from a named template of build steps

    A plain freestyle project is generated unless ``rubies`` or ``node_labels``
    are set, in which case a multi-configuration (matrix) project gets an axis
    for each of them.

    Usage::

        builder = JobConfigBuilder("rails")
        builder.scm = "git@github.com:me/myapp.git"
        builder.scm_branches = ["master"]
        xml_text = builder.to_xml()
    """

    def __init__(self, job_type="ruby"):
        if job_type not in JOB_TEMPLATE_STEPS:
            raise InvalidTemplateError(job_type)
        self.job_type = job_type
        self.scm = None
        self.scm_branches = ["master"]
        self.public_scm = False
        self.assigned_node = None
        self.node_labels = []
        self.rubies = []

    def __str__(self):
        return f"<JobConfigBuilder {self.job_type} scm={self.scm}>"

    @property
    def is_matrix(self):
        return bool(self.rubies or self.node_labels)

    @property
    def scm_url(self):
        if self.scm and self.public_scm:
            return public_scm_url(self.scm)
        return self.scm

    def build_steps(self):
        steps = JOB_TEMPLATE_STEPS[self.job_type]
        if self.rubies:
            steps = [f'rvm $RUBY_VERSION exec bash -c "{step}"' if "\n" not in step else step
                     for step in steps]
        return steps

    def to_xml(self):
        """
        :return: config.xml as a UTF-8 encoded string
        """
        impl = minidom.getDOMImplementation()
        root_tag = "matrix-project" if self.is_matrix else "project"
        doc = impl.createDocument(None, root_tag, None)
        root = doc.documentElement

        xml_add_text_element(doc, root, "actions")
        xml_add_text_element(doc, root, "description")
        xml_add_text_element(doc, root, "keepDependencies", "false")
        xml_add_text_element(doc, root, "properties")
        self._add_scm(doc, root)

        if self.assigned_node:
            xml_add_text_element(doc, root, "assignedNode", self.assigned_node)
            xml_add_text_element(doc, root, "canRoam", "false")
        else:
            xml_add_text_element(doc, root, "canRoam", "true")

        xml_add_text_element(doc, root, "disabled", "false")
        xml_add_text_element(doc, root, "blockBuildWhenUpstreamBuilding", "false")
        xml_add_text_element(doc, root, "triggers")
        xml_add_text_element(doc, root, "concurrentBuild", "false")

        if self.is_matrix:
            self._add_axes(doc, root)

        builders = xml_add_text_element(doc, root, "builders")
        for step in self.build_steps():
            shell = xml_add_text_element(doc, builders, "hudson.tasks.Shell")
            xml_add_text_element(doc, shell, "command", step)

        xml_add_text_element(doc, root, "publishers")
        xml_add_text_element(doc, root, "buildWrappers")

        if self.is_matrix:
            xml_add_text_element(doc, root, "runSequentially", "false")

        return doc.toprettyxml(indent="  ", encoding="UTF-8").decode("utf-8")

    def _add_scm(self, doc, root):
        if not self.scm:
            scm = doc.createElement("scm")
            scm.setAttribute("class", "hudson.scm.NullSCM")
            root.appendChild(scm)
            return

        scm = doc.createElement("scm")
        scm.setAttribute("class", "hudson.plugins.git.GitSCM")
        scm.setAttribute("plugin", "git")
        root.appendChild(scm)
        xml_add_text_element(doc, scm, "configVersion", "2")

        remotes = xml_add_text_element(doc, scm, "userRemoteConfigs")
        remote = xml_add_text_element(doc, remotes, "hudson.plugins.git.UserRemoteConfig")
        xml_add_text_element(doc, remote, "url", self.scm_url)

        branches = xml_add_text_element(doc, scm, "branches")
        for branch in self.scm_branches:
            spec = xml_add_text_element(doc, branches, "hudson.plugins.git.BranchSpec")
            xml_add_text_element(doc, spec, "name", branch)

        xml_add_text_element(doc, scm, "doGenerateSubmoduleConfigurations", "false")
        xml_add_text_element(doc, scm, "submoduleCfg")
        xml_add_text_element(doc, scm, "extensions")

    def _add_axes(self, doc, root):
        axes = xml_add_text_element(doc, root, "axes")
        if self.rubies:
            axis = xml_add_text_element(doc, axes, "hudson.matrix.TextAxis")
            xml_add_text_element(doc, axis, "name", "RUBY_VERSION")
            values = xml_add_text_element(doc, axis, "values")
            for ruby in self.rubies:
                xml_add_text_element(doc, values, "string", ruby)
        if self.node_labels:
            axis = xml_add_text_element(doc, axes, "hudson.matrix.LabelAxis")
            xml_add_text_element(doc, axis, "name", "label")
            values = xml_add_text_element(doc, axis, "values")
            for label in self.node_labels:
                xml_add_text_element(doc, values, "string", label)


#####################################################################
# SCM discovery
#####################################################################

class GitScm(object):
    def __init__(self, url):
        self.url = url

    def __str__(self):
        return f"<GitScm {self.url}>"


class ProjectScm(object):
    supported = ["git"]

    @staticmethod
    def discover(scm_uri=None, path="."):
        """
        Find the SCM of project in ``path``

        :param scm_uri: explicitly given SCM URI, used as is
        :param path:    project directory
        :return:        GitScm object or None when the SCM can not be determined
        """
        if scm_uri:
            return GitScm(scm_uri)
        if not os.path.isdir(os.path.join(path, ".git")):
            return None
        try:
            proc = subprocess.run(["git", "config", "--get", "remote.origin.url"],
                                  cwd=path, capture_output=True, text=True)
        except OSError:
            # git is not installed
            return None
        url = proc.stdout.strip()
        if proc.returncode != 0 or not url:
            return None
        return GitScm(url)
