"""Shared fixtures: isolated storage roots and stub external tools.

The stubs are small Python scripts run through ``sys.executable`` so the
real subprocess code paths are exercised. Each stub appends its argv (and
any extra data) as one JSON line to ``<script>.calls``.
"""

import json
import sys
import textwrap
from pathlib import Path

import pytest

from convpipe.orchestrator.pipeline import PipelineCoordinator
from convpipe.services.artifact_store import ArtifactStore
from convpipe.services.tools import ConvolutionEngine, Transcoder

_RECORD = '''
import json, sys, time
from pathlib import Path

def record(**extra):
    entry = {"argv": sys.argv[1:], **extra}
    with open(Path(__file__).with_suffix(".calls"), "a") as f:
        f.write(json.dumps(entry) + "\\n")
'''

STUBS = {
    "engine_ok": _RECORD + '''
import shutil
record()
_, ir, out, settings = sys.argv[1:5]
shutil.copyfile(sys.argv[1], out)
print("Using settings: " + settings)
''',
    "engine_fail": _RECORD + '''
record()
sys.stderr.write("bad format\\n")
sys.exit(1)
''',
    "engine_hang": _RECORD + '''
record()
time.sleep(30)
''',
    "engine_slow": _RECORD + '''
import shutil
start = time.monotonic()
time.sleep(0.3)
shutil.copyfile(sys.argv[1], sys.argv[3])
record(start=start, end=time.monotonic())
''',
    "transcoder": _RECORD + '''
import shutil
record()
args = sys.argv[1:]
shutil.copyfile(args[args.index("-i") + 1], args[-1])
''',
    "transcoder_fail": _RECORD + '''
record()
sys.stderr.write("Invalid data found when processing input\\n")
sys.exit(1)
''',
    "worker": '''
import signal, sys, time
args = sys.argv[1:]
if "--ignore-term" in args:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
if "--exit-now" in args:
    print("booting", flush=True)
    sys.exit(3)
if "--silent" not in args:
    print("READY", flush=True)
    print("warming up", file=sys.stderr, flush=True)
if "--exit-after" in args:
    time.sleep(float(args[args.index("--exit-after") + 1]))
    sys.exit(3)
while True:
    time.sleep(0.05)
''',
    "health_worker": '''
import json, sys
from http.server import BaseHTTPRequestHandler, HTTPServer

class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = json.dumps({"status": "OK", "message": "stub"}).encode()
        self.send_response(200 if self.path == "/health" else 404)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass

HTTPServer(("127.0.0.1", int(sys.argv[1])), Handler).serve_forever()
''',
}

SCENARIO_SETTINGS = {
    "dryWet": 50,
    "inputGain": 0,
    "outputGain": 0,
    "impulseGain": 0,
    "lowPassFreq": 20000,
    "highPassFreq": 20,
    "stereoWidth": 100,
    "normalize": True,
}


@pytest.fixture
def stub(tmp_path):
    """Return a factory: stub(name) -> command list running that stub script."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str) -> list[str]:
        script = bin_dir / f"{name}.py"
        if not script.exists():
            script.write_text(textwrap.dedent(STUBS[name]))
        return [sys.executable, str(script)]

    return _make


def read_calls(command: list[str]) -> list[dict]:
    """Invocations recorded by the stub behind ``command`` (empty if never run)."""
    calls_file = Path(command[-1]).with_suffix(".calls")
    if not calls_file.exists():
        return []
    return [json.loads(line) for line in calls_file.read_text().splitlines() if line]


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(
        uploads_dir=tmp_path / "uploads",
        outputs_dir=tmp_path / "Outputs",
        library_dir=tmp_path / "library",
        audio_dir=tmp_path / "audio",
    )


@pytest.fixture
def make_coordinator(store, stub):
    """Factory building a coordinator around named engine/transcoder stubs."""

    def _make(engine: str = "engine_ok", transcoder: str = "transcoder", **kwargs):
        engine_cmd = stub(engine)
        transcoder_cmd = stub(transcoder)
        coordinator = PipelineCoordinator(
            store,
            ConvolutionEngine(engine_cmd, timeout=kwargs.pop("engine_timeout", 30)),
            Transcoder(store, transcoder_cmd, timeout=kwargs.pop("transcode_timeout", 30)),
            **kwargs,
        )
        coordinator.engine_cmd = engine_cmd
        coordinator.transcoder_cmd = transcoder_cmd
        return coordinator

    return _make


@pytest.fixture
def library(store):
    """Library with categories Room and Hall, one WAV each plus a stray text file."""
    for category, name in (("Room", "small_room"), ("Hall", "big_hall")):
        folder = store.library_dir / category
        folder.mkdir(parents=True)
        (folder / f"{name}.wav").write_bytes(b"RIFF" + category.encode())
    (store.library_dir / "Room" / "notes.txt").write_text("not audio")
    return store.library_dir


@pytest.fixture
def sample_audio(store):
    store.audio_dir.mkdir(parents=True)
    path = store.audio_dir / "in.wav"
    path.write_bytes(b"RIFF-sample-audio")
    return path
