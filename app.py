import logging

from dotenv import load_dotenv
from web3 import Web3

from holder_ledger.api import create_app
from holder_ledger.config import Settings
from holder_ledger.synchronizer import build_service

# ─── CONFIG ───────────────────────────────────────────────────
load_dotenv()
settings = Settings.from_env(dotenv=False)
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

if not settings.rpc_url:
    raise RuntimeError("❌ RPC_URL is not set")
w3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.call_timeout}))
if not w3.is_connected():
    logger.error(f"Failed to connect to RPC at {settings.rpc_url}")
    raise RuntimeError("❌ Could not connect to RPC")

if not settings.remote_cache_enabled:
    logger.warning("SUPABASE_URL/SUPABASE_KEY not set, caching in memory and on disk only")

service = build_service(settings, w3=w3)
app = create_app(service, service.store, settings)

if __name__ == "__main__":
    app.run(debug=True)
