import pytest

from chain.networks import ETHEREUM, network_by_name
from config import Settings
from fakes import TOKEN, USDC, USER, tx_hash
from ledger.models import Purchase, PurchaseStatus
from main import _build_parser, _dispatch, build_app


def _settings(**overrides):
    fields = dict(database_url="sqlite://", auto_sell_delay_minutes=10)
    fields.update(overrides)
    return Settings(**fields)


def _held(n=1, status=PurchaseStatus.HELD):
    return Purchase(
        tx_hash=tx_hash(n),
        token_address=TOKEN,
        token_symbol="TKN",
        token_name="Token",
        token_decimals=18,
        stablecoin_address=USDC,
        stablecoin_symbol="USDC",
        amount_in="1000",
        amount_out=str(3 * 10**18),
        chain_id=1,
        purchase_time=1000.0,
        auto_sell_time=1600.0,
        wallet_address=USER,
        status=status,
    )


class TestSettings:
    def test_from_env_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///x.db")
        monkeypatch.setenv("AUTO_SELL_DELAY_MINUTES", "15")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.database_url == "sqlite:///x.db"
        assert settings.auto_sell_delay_minutes == 15
        assert settings.log_level == "DEBUG"

    def test_bad_integer_exits(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_SLIPPAGE_BPS", "lots")
        with pytest.raises(SystemExit):
            Settings.from_env()


class TestParser:
    def test_swap_arguments(self):
        args = _build_parser().parse_args(
            ["--chain", "base", "swap", "--token-in", TOKEN, "--token-out", USDC,
             "--amount", "500", "--auto-sell", "--delay-minutes", "5"]
        )
        assert args.command == "swap"
        assert args.amount == 500
        assert args.auto_sell
        assert args.delay_minutes == 5
        assert network_by_name(args.chain).chain_id == 8453

    def test_unknown_network(self):
        with pytest.raises(ValueError):
            network_by_name("nowhere")


class TestDispatch:
    def test_build_app_without_wallet(self):
        app = build_app(_settings())
        assert app.wallet is None and app.executor is None
        assert app.scheduler.default_delay_seconds == 600

    @pytest.mark.asyncio
    async def test_purchases_lists_ledger_rows(self, capsys):
        app = build_app(_settings())
        app.ledger.insert(_held(1))
        app.ledger.insert(_held(2, status=PurchaseStatus.SOLD))

        args = _build_parser().parse_args(["purchases", "--status", "HELD"])
        assert await _dispatch(app, ETHEREUM, args) == 0

        out = capsys.readouterr().out
        assert tx_hash(1) in out
        assert tx_hash(2) not in out

    @pytest.mark.asyncio
    async def test_cancel_reports_missing_purchase(self, capsys):
        app = build_app(_settings())
        args = _build_parser().parse_args(["cancel", tx_hash(1)])

        assert await _dispatch(app, ETHEREUM, args) == 1
        assert "Purchase not found" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_cancel_then_retry_rejected(self, capsys):
        app = build_app(_settings())
        app.ledger.insert(_held(1))

        cancel = _build_parser().parse_args(["cancel", tx_hash(1)])
        assert await _dispatch(app, ETHEREUM, cancel) == 0
        assert app.ledger.get(tx_hash(1)).status is PurchaseStatus.CANCELLED

        retry = _build_parser().parse_args(["retry", tx_hash(1)])
        assert await _dispatch(app, ETHEREUM, retry) == 1
