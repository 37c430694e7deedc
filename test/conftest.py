import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def make_paths(tmp_path: Path):
    from shopledger.config import AppPaths

    logs = tmp_path / "logs"
    logs.mkdir(parents=True, exist_ok=True)
    return AppPaths(
        base_dir=tmp_path,
        logs_dir=logs,
        policies_path=tmp_path / "policies.json",
        dan_buffer_path=tmp_path / "dan_buffer.json",
    )


def make_container(tmp_path: Path, **overrides):
    """Container over a freshly provisioned in-memory store."""
    from shopledger.application.container import build_container, provision_memory_store
    from shopledger.config import Settings
    from shopledger.services.embedding_service import NullEmbeddingService

    settings = replace(Settings(store_url="memory", scroll_retry_delay=0.0), **overrides)
    store = provision_memory_store(settings)
    return build_container(settings=settings, paths=make_paths(tmp_path), store=store, embedder=NullEmbeddingService())


def intake(name: str, qty: int, cost: float, expiration: str, **kw):
    from shopledger.domain.models import StockIntakeLine

    return StockIntakeLine(product_name=name, quantity=qty, buy_price=cost, expiration_date=expiration, **kw)
