# chamado_sync/tools/load_env.py
import os, pathlib

def load_env(dotenv_path: str = ".env", *, override: bool = False) -> bool:
    """Load KEY=VALUE lines into os.environ; existing variables win unless override=True."""
    p = pathlib.Path(dotenv_path)
    if not p.exists():
        return False
    for line in p.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip()
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1]
        if not k or (k in os.environ and not override):
            continue
        # basic boolean normalization
        if v.lower() in ("true", "false"):
            os.environ[k] = v.lower()
        else:
            os.environ[k] = v
    return True
