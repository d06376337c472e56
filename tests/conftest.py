"""
Shared fixtures: an in-memory descriptor store with optimistic versioning
and a realistic deployment manifest.
"""
import threading

import pytest

from release_orchestrator.core.errors import StaleDescriptor
from release_orchestrator.services.descriptor_store import DescriptorSnapshot

OLD_REVISION = "0" * 40

MANIFEST = f"""# Production deployment for the shop
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  labels:
    app: web
spec:
  replicas: 3
  template:
    spec:
      containers:
        - name: web
          image: ghcr.io/acme/shop:sha-{OLD_REVISION}  # bumped by CI
          ports:
            - containerPort: 8080
        - name: proxy
          image: docker.io/envoyproxy/envoy:v1.29
---
apiVersion: v1
kind: Service
metadata:
  name: web-svc
spec:
  ports:
    - port: 80
"""


class InMemoryDescriptorStore:
    """
    Descriptor storage double. ``version`` bumps on every commit; a write
    based on an older version raises StaleDescriptor like a rejected push.
    """

    def __init__(self, content: str):
        self.content = content
        self.version = 0
        self.commits = []
        self.reads = 0
        self.discarded = 0
        self.before_write = []
        self._lock = threading.Lock()

    def read(self, path):
        with self._lock:
            self.reads += 1
            return DescriptorSnapshot(path=path, content=self.content, version=str(self.version))

    def write(self, snapshot, content, message):
        if self.before_write:
            self.before_write.pop(0)()
        with self._lock:
            if snapshot.version != str(self.version):
                raise StaleDescriptor(f"version {snapshot.version} is behind {self.version}")
            self.version += 1
            self.content = content
            sha = f"{self.version:040x}"
            self.commits.append({"sha": sha, "message": message, "content": content})
            return sha

    def discard(self, snapshot):
        self.discarded += 1


@pytest.fixture
def manifest():
    return MANIFEST


@pytest.fixture
def descriptor_store():
    return InMemoryDescriptorStore(MANIFEST)
