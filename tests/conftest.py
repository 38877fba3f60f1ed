"""
Pytest configuration and fixtures.
Adds the repo root to sys.path so tests can import gridworker without installing.
"""

import sys
from decimal import Decimal
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from gridworker.config.accounts import AccountResolver  # noqa: E402
from gridworker.exchange.models import Product  # noqa: E402
from gridworker.exchange.paper import PaperExchange  # noqa: E402
from gridworker.monitoring.activity import ActivityRecorder, EquityRecorder  # noqa: E402
from gridworker.monitoring.metrics import WorkerMetrics  # noqa: E402
from gridworker.orchestrator.bot_runner import BotRunner, RunnerConfig  # noqa: E402
from gridworker.orchestrator.exchanges import ExchangeProvider  # noqa: E402
from gridworker.state.models import BotConfig, ExecutionMode, GridMode  # noqa: E402
from gridworker.state.repository import BotRepository  # noqa: E402
from gridworker.state.store import MemoryStore  # noqa: E402

OWNER = "alice@example.com"
EXCHANGE = "delta_india"
BTC = Product(id=27, symbol="BTCUSD", tick_size=Decimal("0.5"), contract_value=Decimal("0.001"))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def repo(store):
    return BotRepository(store)


@pytest.fixture
def activity(store):
    return ActivityRecorder(store, max_events=500)


@pytest.fixture
def equity(store):
    return EquityRecorder(store, max_points=100)


@pytest.fixture
def paper():
    ex = PaperExchange()
    ex.add_product(BTC, mark_price=Decimal("107"))
    return ex


@pytest.fixture
def make_config():
    def _make(**overrides) -> BotConfig:
        fields = dict(
            bot_id="bot1",
            owner=OWNER,
            exchange=EXCHANGE,
            symbol="BTCUSD",
            lower=Decimal("100"),
            upper=Decimal("110"),
            levels=3,
            quantity=Decimal("1"),
            leverage=Decimal("5"),
            mode=GridMode.ARITHMETIC,
            name="btc grid",
            execution=ExecutionMode.LIVE,
            running=True,
        )
        fields.update(overrides)
        return BotConfig(**fields)
    return _make


@pytest.fixture
def provider(paper):
    p = ExchangeProvider(AccountResolver({}, env_fallback=False))
    p.register(OWNER, EXCHANGE, ExecutionMode.LIVE, paper)
    return p


@pytest.fixture
def runner(repo, provider, activity, equity):
    return BotRunner(
        repo=repo,
        exchanges=provider,
        activity=activity,
        equity=equity,
        metrics=WorkerMetrics(),
        config=RunnerConfig(max_consecutive_failures=3, equity_snapshot_interval=0.0),
    )
