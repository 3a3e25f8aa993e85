import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest
import trimesh

# Make the repository root importable so tests can use the top-level packages.
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


def box_stl_bytes(size: float = 10.0) -> bytes:
    return trimesh.creation.box(extents=(size, size, size)).export(file_type="stl")


BOX_STL = box_stl_bytes()


FAKE_PNG = b"\x89PNG\r\n\x1a\nfake-image"
FAKE_CSG = b"group() {\n  cube(size = [10, 10, 10], center = false);\n}\n"


class FakeEngine:
    """In-process stand-in for an embeddable OpenSCAD engine.

    Behaviour is keyed on words in the source text: ``error`` exits non-zero,
    ``raise`` throws, ``missing`` produces no output file, ``chatty`` prints
    extra lines on both streams.
    """

    def __init__(self, print_fn, print_err_fn, calls):
        self._print = print_fn
        self._print_err = print_err_fn
        self._calls = calls
        self.files = {}

    def write_file(self, path, data):
        self.files[path] = data

    def read_file(self, path):
        return self.files[path]

    def call_main(self, args):
        self._calls.append(list(args))
        if "--version" in args:
            self._print("OpenSCAD version 2024.05.12 (embedded)")
            return 0
        source = self.files[args[0]]
        output = args[args.index("-o") + 1]
        self._print("Parsing design (AST generation)...")
        if "raise" in source:
            raise RuntimeError("engine crashed")
        if "chatty" in source:
            self._print_err("WARNING: Object may not be a valid 2-manifold")
            self._print("Rendering Polygon Mesh using Manifold...")
        if "error" in source:
            self._print_err("ERROR: Parser error in file /input.scad, line 1")
            return 1
        if "missing" in source:
            return 0
        if output.endswith(".stl"):
            self.files[output] = BOX_STL
        elif output.endswith(".png"):
            self.files[output] = FAKE_PNG
        elif output.endswith(".csg"):
            # Text output is allowed; the backend encodes it.
            self.files[output] = FAKE_CSG.decode("utf-8")
        else:
            self.files[output] = b"artifact:" + output.encode("utf-8")
        return 0


@pytest.fixture
def engine_calls():
    return []


@pytest.fixture
def engine_factory(engine_calls):
    def factory(print_fn, print_err_fn):
        return FakeEngine(print_fn, print_err_fn, engine_calls)

    return factory


FAKE_OPENSCAD = """\
#!{python}
import json
import sys
import time

args = sys.argv[1:]
with open({log!r}, "a") as log:
    log.write(json.dumps(args) + "\\n")
if "--version" in args:
    sys.stderr.write("OpenSCAD version 2021.01\\n")
    sys.exit(0)

source = open(args[0]).read()
output = args[args.index("-o") + 1]
if "chatty" in source:
    for step in range(3):
        sys.stdout.write("step %d\\n" % step)
        sys.stdout.flush()
        time.sleep(0.01)
if "error" in source:
    sys.stderr.write("ERROR: Parser error in file, line 1\\n")
    sys.exit(1)
if "missing" in source:
    sys.exit(0)
with open(output, "wb") as handle:
    handle.write(("solid fake\\n" + source + "\\nendsolid fake\\n").encode("utf-8"))
"""


def _write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_openscad(tmp_path):
    """Executable script mimicking the OpenSCAD CLI; returns (path, log path)."""
    log_path = tmp_path / "openscad-calls.jsonl"
    script = _write_script(
        tmp_path / "openscad",
        FAKE_OPENSCAD.format(python=sys.executable, log=str(log_path)),
    )
    return script, log_path


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


FAKE_WORKER = """\
import base64
import json
import sys
import time


def send(message):
    sys.stdout.write(json.dumps(message) + "\\n")
    sys.stdout.flush()


for line in sys.stdin:
    request = json.loads(line)
    message_id = request["id"]
    if request["type"] == "getVersion":
        send({"id": message_id, "type": "version", "data": "OpenSCAD version 2022.03.20"})
        continue
    source = request.get("sourceText", "")
    if "abort" in source:
        send({"id": message_id, "type": "stderr", "data": "ERROR from crash request\\n"})
        sys.exit(3)
    if "crash" in source:
        sys.exit(3)
    if "garble" in source:
        sys.stdout.write("this is not json\\n")
        sys.stdout.flush()
        continue
    if "hang" in source:
        continue
    if "slow" in source:
        time.sleep(0.5)
    send({"id": message_id, "type": "stdout", "data": "Compiling\\n"})
    if "error" in source:
        send({"id": message_id, "type": "stderr", "data": "ERROR: bad\\n"})
        send({"id": message_id, "type": "error", "error": "Parser error"})
        continue
    payload = json.dumps(
        {
            "source": source,
            "format": request["outputFormat"],
            "args": request["extraArguments"],
        }
    ).encode("utf-8")
    send({"id": message_id, "type": "done", "data": base64.b64encode(payload).decode("ascii")})
"""


@pytest.fixture
def fake_worker_command(tmp_path):
    script = tmp_path / "fake_worker.py"
    script.write_text(FAKE_WORKER)
    return [sys.executable, str(script)]


ENGINE_MODULE = textwrap.dedent(
    """
    class _Engine:
        def __init__(self, print_fn, print_err_fn):
            self._print = print_fn
            self._print_err = print_err_fn
            self._files = {}

        def write_file(self, path, data):
            self._files[path] = data

        def read_file(self, path):
            return self._files[path]

        def call_main(self, args):
            if "--version" in args:
                self._print("OpenSCAD version 2023.11.04")
                return 0
            source = self._files[args[0]]
            self._print("Compiling " + args[0])
            if "error" in source:
                self._print_err("ERROR: Parser error")
                return 1
            self._files[args[args.index("-o") + 1]] = ("flags:" + " ".join(args[3:])).encode("utf-8")
            return 0


    def create_engine(print_fn, print_err_fn):
        return _Engine(print_fn, print_err_fn)
    """
)


@pytest.fixture
def engine_module(tmp_path, monkeypatch):
    """Importable engine module on both this process's and child processes' path."""
    module_dir = tmp_path / "engines"
    module_dir.mkdir()
    (module_dir / "fake_scad_engine.py").write_text(ENGINE_MODULE)
    monkeypatch.syspath_prepend(str(module_dir))
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH", os.pathsep.join(filter(None, [str(module_dir), root_str, existing]))
    )
    return "fake_scad_engine"
