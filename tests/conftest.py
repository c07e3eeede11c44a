import os
import sys
import tempfile
from pathlib import Path


os.environ.setdefault("LLM_API_KEY", "test-key")
os.environ.setdefault("LLM_PROVIDER", "custom")
os.environ.setdefault("LLM_BASE_URL", "https://api.openai.com/v1")
os.environ.setdefault("LLM_MODEL", "gpt-4o-mini")

_runtime_root = Path(tempfile.mkdtemp(prefix="tutorchat-tests-"))
os.environ.setdefault("DATA_DIR", str(_runtime_root / "data"))
os.environ.setdefault("BLOB_DIR", str(_runtime_root / "blobs"))
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

repo_root = Path(__file__).resolve().parents[1]
src_dir = repo_root / "src"
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))
