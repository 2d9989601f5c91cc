"""Fixtures for the command line tool tests."""

from pathlib import Path
import textwrap

import git
import pytest

APPLICATIONS = """\
apiVersion: gitops.dev/v1alpha1
kind: Application
metadata:
  name: guestbook
  namespace: gitops
spec:
  source:
    repoURL: https://git.example.com/apps.git
    path: apps/guestbook
  syncPolicy:
    prune: true
---
apiVersion: gitops.dev/v1alpha1
kind: Application
metadata:
  name: podinfo
  namespace: gitops
spec:
  source:
    repoURL: https://git.example.com/apps.git
    path: apps/podinfo
  destination:
    namespace: podinfo
"""

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 3
  template:
    spec:
      containers:
      - name: web
        image: nginx:1.25
"""

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: podinfo
data:
  color: blue
"""


@pytest.fixture(name="repo_path")
def repo_path_fixture(tmp_path: Path) -> Path:
    """A git repository with two Applications, returning the Applications directory."""
    repo = git.Repo.init(tmp_path)
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Test")
        writer.set_value("user", "email", "test@example.com")

    files = {
        "clusters/apps.yaml": APPLICATIONS,
        "apps/guestbook/deployment.yaml": DEPLOYMENT,
        "apps/podinfo/settings.yaml": CONFIG_MAP,
    }
    for name, content in files.items():
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content))
    repo.index.add(list(files))
    repo.index.commit("Add applications")
    return tmp_path / "clusters"
