import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(Path(config_file).read_text())

adm = cfg["admin"]
cfg["admin"]["seed"] = os.getenv("ADMIN_SEED", adm.get("seed", "snoPBrXtMeMyMHUVTgbuqAfg1SUTb"))
cfg["session"]["dir"] = os.getenv("SESSION_DIR", cfg["session"]["dir"])
cfg["state"]["db"] = os.getenv("STATE_DB", cfg["state"]["db"])

if Path("/.dockerenv").is_file():
    rippled = cfg["rippled"]["docker"]
else:
    rippled = cfg["rippled"]["local"]

RPC = os.getenv("RPC_URL", f"http://{os.getenv('RIPPLED_IP', rippled)}:{cfg['rippled']['rpc_port']}")
