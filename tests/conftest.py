"""
Shared fixtures: an in-memory Docker engine behind httpx.MockTransport.
"""
import io
import itertools
import json
import re
import tarfile
import threading
import time
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from dockit.ENGINE.engine_client import EngineClient

ENGINE_HOST = "10.0.0.5"


class FollowStream(httpx.SyncByteStream):
    """
    Log response body that sends scripted chunks at their offsets, then
    either ends (the container exits) or blocks until closed.
    """
    def __init__(self, engine, script: List[Tuple[float, bytes]], follow: bool, on_end=None):
        self.engine = engine
        self.script = script
        self.follow = follow
        self.on_end = on_end
        self._closed = threading.Event()
        engine.open_streams += 1

    def __iter__(self):
        start = time.monotonic()
        for offset, data in self.script:
            wait = start + offset - time.monotonic()
            if wait > 0 and self._closed.wait(wait):
                return
            if self._closed.is_set():
                return
            yield data
        if self.on_end is not None:
            self.on_end()
            return
        if self.follow:
            while not self._closed.wait(0.05):
                pass

    def close(self):
        if not self._closed.is_set():
            self._closed.set()
            self.engine.open_streams -= 1


class FakeEngine:
    """
    Just enough of the Docker engine API for the tests.

    Images may declare exposed ports, a log script of (offset seconds, bytes)
    and an exit code the container exits with once its script ran.
    """
    def __init__(self):
        self.images: Dict[str, Dict] = {}
        self.containers: Dict[str, Dict] = {}
        self.calls: List[Tuple[str, str]] = []
        self.created: Dict[str, Dict] = {}
        self.build_error: Optional[str] = None
        self.fail_next: List[Exception] = []
        self.pullable: Dict[str, Dict] = {}
        self.open_streams = 0
        self._ids = itertools.count(1)
        self._host_ports = itertools.count(32768)

    # -- setup helpers ------------------------------------------------------

    def add_image(self, name: str, exposed=(), logs=(), exit_code: Optional[int] = None) -> str:
        image_id = f"sha256:{next(self._ids):064x}"
        image = {
            "id": image_id,
            "tags": [name],
            "exposed": list(exposed),
            "logs": list(logs),
            "exit_code": exit_code,
        }
        self.images[image_id] = image
        return image_id

    def find_image(self, ref: str) -> Optional[Dict]:
        if ref in self.images:
            return self.images[ref]
        for image in self.images.values():
            if ref in image["tags"] or image["id"].split(":")[-1].startswith(ref):
                return image
        return None

    def running_containers(self) -> List[Dict]:
        return [c for c in self.containers.values() if c["running"]]

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [p for m, p in self.calls if method is None or m == method]

    # -- request handling ---------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = re.sub(r"^/v[0-9.]+", "", request.url.path)
        self.calls.append((request.method, path))
        if self.fail_next:
            raise self.fail_next.pop(0)

        routes = [
            ("POST", r"/build", self._build),
            ("POST", r"/images/create", self._pull),
            ("GET", r"/images/(?P<name>.+)/json", self._inspect_image),
            ("DELETE", r"/images/(?P<name>.+)", self._remove_image),
            ("POST", r"/containers/create", self._create),
            ("POST", r"/containers/(?P<cid>[^/]+)/start", self._start),
            ("POST", r"/containers/(?P<cid>[^/]+)/stop", self._stop),
            ("GET", r"/containers/(?P<cid>[^/]+)/json", self._inspect),
            ("GET", r"/containers/(?P<cid>[^/]+)/logs", self._logs),
            ("DELETE", r"/containers/(?P<cid>[^/]+)", self._remove),
        ]
        for method, pattern, handler in routes:
            match = re.fullmatch(pattern, path)
            if method == request.method and match:
                return handler(request, **match.groupdict())
        return httpx.Response(404, json={"message": f"page not found: {path}"})

    @staticmethod
    def _not_found(what: str) -> httpx.Response:
        return httpx.Response(404, json={"message": f"No such {what}"})

    @staticmethod
    def _ndjson(records: List[Dict]) -> httpx.Response:
        body = "".join(json.dumps(r) + "\r\n" for r in records)
        return httpx.Response(200, content=body.encode(), headers={"Content-Type": "application/json"})

    def _build(self, request):
        with tarfile.open(fileobj=io.BytesIO(request.content)) as tar:
            dockerfile = tar.extractfile("Dockerfile").read().decode()
        error = self.build_error
        if error is None and "RUN false" in dockerfile:
            error = "The command '/bin/sh -c false' returned a non-zero code: 1"
        if error:
            return self._ndjson([
                {"stream": "Step 1/2 : FROM scratch\n"},
                {"error": error, "errorDetail": {"message": error}},
            ])
        exposed = []
        for line in dockerfile.splitlines():
            if line.upper().startswith("EXPOSE"):
                for port in line.split()[1:]:
                    exposed.append(port if "/" in port else f"{port}/tcp")
        tag = request.url.params.get("t")
        image_id = self.add_image(tag or "<none>", exposed=exposed)
        short = image_id.split(":")[1][:12]
        return self._ndjson([
            {"stream": "Step 1/2 : FROM scratch\n"},
            {"aux": {"ID": image_id}},
            {"stream": f"Successfully built {short}\n"},
        ])

    def _pull(self, request):
        name = request.url.params["fromImage"]
        tag = request.url.params.get("tag", "latest")
        ref = f"{name}:{tag}"
        if ref not in self.pullable:
            return self._ndjson([{"error": f"pull access denied for {name}"}])
        self.add_image(ref, **self.pullable[ref])
        return self._ndjson([{"status": f"Pulling from {name}"}, {"status": "Download complete"}])

    def _inspect_image(self, request, name):
        image = self.find_image(name)
        if image is None:
            return self._not_found(f"image: {name}")
        return httpx.Response(200, json={"Id": image["id"], "RepoTags": image["tags"]})

    def _remove_image(self, request, name):
        image = self.find_image(name)
        if image is None:
            return self._not_found(f"image: {name}")
        if any(c["image"] is image for c in self.containers.values()):
            return httpx.Response(409, json={"message": "image is being used by a container"})
        del self.images[image["id"]]
        return httpx.Response(200, json=[{"Deleted": image["id"]}])

    def _create(self, request):
        body = json.loads(request.content)
        image = self.find_image(body["Image"])
        if image is None:
            return self._not_found(f"image: {body['Image']}")
        cid = f"{next(self._ids):064x}"
        self.containers[cid] = {
            "id": cid,
            "name": f"/fake_{len(self.containers) + 1}",
            "image": image,
            "body": body,
            "running": False,
            "exit_code": 0,
            "ports": {},
        }
        self.created[cid] = body
        return httpx.Response(201, json={"Id": cid, "Warnings": []})

    def _start(self, request, cid):
        container = self.containers.get(cid)
        if container is None:
            return self._not_found(f"container: {cid}")
        if container["running"]:
            return httpx.Response(304)
        container["running"] = True
        host_config = container["body"].get("HostConfig", {})
        bindings = host_config.get("PortBindings") or {}
        declared = list(container["image"]["exposed"]) + list(container["body"].get("ExposedPorts") or {})
        ports = {}
        for key in declared:
            if key in bindings:
                host_port = bindings[key][0]["HostPort"] or str(next(self._host_ports))
                ports[key] = [{"HostIp": "0.0.0.0", "HostPort": host_port}]
            elif host_config.get("PublishAllPorts"):
                ports[key] = [{"HostIp": "0.0.0.0", "HostPort": str(next(self._host_ports))}]
            else:
                ports[key] = None
        container["ports"] = ports
        if container["image"]["exit_code"] is not None and not container["image"]["logs"]:
            self._exit(container)
        return httpx.Response(204)

    def _exit(self, container):
        container["running"] = False
        container["exit_code"] = container["image"]["exit_code"]

    def _stop(self, request, cid):
        container = self.containers.get(cid)
        if container is None:
            return self._not_found(f"container: {cid}")
        if not container["running"]:
            return httpx.Response(304)
        container["running"] = False
        return httpx.Response(204)

    def _remove(self, request, cid):
        container = self.containers.get(cid)
        if container is None:
            return self._not_found(f"container: {cid}")
        if container["running"] and request.url.params.get("force") != "1":
            return httpx.Response(409, json={"message": "container is running"})
        del self.containers[cid]
        return httpx.Response(204)

    def _inspect(self, request, cid):
        container = self.containers.get(cid)
        if container is None:
            return self._not_found(f"container: {cid}")
        return httpx.Response(200, json={
            "Id": cid,
            "Name": container["name"],
            "State": {"Running": container["running"], "ExitCode": container["exit_code"]},
            "NetworkSettings": {"Ports": container["ports"]},
        })

    def _logs(self, request, cid):
        container = self.containers.get(cid)
        if container is None:
            return self._not_found(f"container: {cid}")
        follow = request.url.params.get("follow") == "1"
        image = container["image"]
        on_end = None
        if image["exit_code"] is not None:
            on_end = lambda: self._exit(container)  # noqa: E731
        elif not container["running"]:
            follow = False
        return httpx.Response(200, stream=FollowStream(self, image["logs"], follow, on_end))


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def client(engine):
    c = EngineClient(
        base_url="http://fake-engine",
        host=ENGINE_HOST,
        transport=httpx.MockTransport(engine.handle),
        retry_backoff=(0, 0),
    )
    yield c
    c.close()


@pytest.fixture
def context_archive():
    """Factory for build contexts holding just a Dockerfile."""
    def make(dockerfile: str = "FROM scratch\n") -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            data = dockerfile.encode()
            info = tarfile.TarInfo("Dockerfile")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()
    return make
