# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Constants and profile loading."""

from __future__ import annotations

from pathlib import Path

import yaml

# -- Resolved paths --
PACKAGE_DIR = Path(__file__).resolve().parent
PROFILES_FILE = PACKAGE_DIR / "profiles.yaml"


def load_profiles(path: Path | None = None) -> dict:
    """Load named configuration profiles from a YAML file.

    Args:
        path: Profiles file to read, or None for the packaged ``profiles.yaml``.

    Returns:
        Mapping of profile name to its field overrides.
    """
    profiles_file = path or PROFILES_FILE
    with open(profiles_file) as f:
        return yaml.safe_load(f) or {}


# -- kind cluster defaults --
DEFAULT_CLUSTER_NAME = "neo4j-local"
DEFAULT_WORKER_NODES = 0
KIND_CONTEXT_PREFIX = "kind-"
KIND_API_VERSION = "kind.x-k8s.io/v1alpha4"
KIND_CREATE_WAIT = "120s"

# -- Neo4j workload defaults --
DEFAULT_NAMESPACE = "neo4j"
DEFAULT_RELEASE_NAME = "neo4j-local"
DEFAULT_PASSWORD = "testpassword"
DEFAULT_USERNAME = "neo4j"
DEFAULT_CHART_VERSION = "2025.10.1"
DEFAULT_CPU = "1"
DEFAULT_MEMORY = "2Gi"
DEFAULT_STORAGE = "10Gi"
DEFAULT_PROFILE = "default"

# Native Vector type support starts with the 2025.10 chart/server line.
MIN_CHART_VERSION = (2025, 10)

# -- Helm repo --
HELM_REPO_NAME = "neo4j"
HELM_REPO_URL = "https://helm.neo4j.com/neo4j"
HELM_CHART_NAME = "neo4j"
HELM_KEY_PASSWORD = "neo4j.password"

# -- Port mappings (name, host, container) --
DEFAULT_PORT_MAPPINGS = (
    ("bolt", 17687, 7687),
    ("http", 17474, 7474),
)

# -- Timeouts (seconds) --
DEFAULT_INSTALL_TIMEOUT = 600
DEFAULT_CHECK_TIMEOUT = 60
CLUSTER_CREATE_TIMEOUT = 300
TOOL_TIMEOUT = 60
POD_APPEAR_POLL_INTERVAL_SECONDS = 2
# Seconds a process or check may overrun its own timeout before it is abandoned.
KUBECTL_PROCESS_GRACE_SECONDS = 5
CHECK_DEADLINE_GRACE_SECONDS = 10
HELM_TIMEOUT_MARKERS = ("timed out waiting", "context deadline exceeded")
NOT_FOUND_MARKERS = ("not found", "notfound", "does not exist")

# -- Labels --
LABEL_APP = "app"

# -- Calico --
CALICO_MANIFEST_URL = "https://raw.githubusercontent.com/projectcalico/calico/v3.27.0/manifests/calico.yaml"
CALICO_SELECTOR = "k8s-app=calico-node"
NS_KUBE_SYSTEM = "kube-system"

# -- Required tools --
REQUIRED_TOOLS = ("kind", "kubectl", "helm")

# -- Exit codes --
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_TOOLS_UNAVAILABLE = 3
EXIT_CANCELLED = 130

# -- Health check statements --
CYPHER_PING = "RETURN 'Neo4j is running' AS status;"
CYPHER_PING_EXPECTED = "Neo4j is running"
CYPHER_COMPONENTS = "CALL dbms.components() YIELD name, versions RETURN name, versions;"
CYPHER_COMPONENTS_EXPECTED = "Neo4j Kernel"
CYPHER_VECTOR = "RETURN vector([1.0, 2.0, 3.0], 3, FLOAT32) AS vec;"
CYPHER_VECTOR_SIMILARITY = (
    "WITH vector([1.0, 0.0], 2, FLOAT32) AS v1, vector([1.0, 0.0], 2, FLOAT32) AS v2 "
    "RETURN vector.similarity.cosine(v1, v2) AS similarity;"
)
