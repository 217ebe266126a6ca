from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from licensing import (
    LicenseRepository,
    LicenseService,
    MockGateway,
    build_session_factory,
    init_license_db,
    session_scope,
)
from licensing.errors import TrialAlreadyUsedError
from licensing.gateway_sign import sign_gateway_params
from licensing.license_crypto import generate_key_pair, load_private_key
from licensing.models import OrderStatus, TokenSource

GATEWAY_KEY = "merchant-key"


def _service(tmp_path: Path, name: str):
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / name}")
    init_license_db(engine)
    service = LicenseService(
        session_factory=session_factory,
        gateway=MockGateway(),
        private_key=load_private_key(generate_key_pair().private_key_hex),
        gateway_key=GATEWAY_KEY,
    )
    return engine, session_factory, service


def test_concurrent_confirmations_mint_a_single_token(tmp_path: Path) -> None:
    engine, session_factory, service = _service(tmp_path, "confirm_race.db")
    out_trade_no = service.create_order("race-user", "1m").out_trade_no
    notify = sign_gateway_params(
        {"out_trade_no": out_trade_no, "trade_no": "T1", "money": "5", "trade_status": "TRADE_SUCCESS"},
        GATEWAY_KEY,
    )

    def _confirm(index: int):
        if index % 2:
            outcome = service.process_notify(notify)
            return outcome.status == "processed", outcome.activation_code
        confirmed = service.confirm_payment(out_trade_no, "T1")
        return confirmed.newly_paid, confirmed.activation_code

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(_confirm, range(10)))

    winners = [item for item in results if item[0]]
    codes = {item[1] for item in results}
    assert len(winners) == 1
    assert len(codes) == 1

    with session_scope(session_factory) as session:
        repo = LicenseRepository(session)
        tokens = repo.list_tokens("race-user")
        assert len(tokens) == 1
        assert tokens[0].source == TokenSource.ORDER
        assert repo.get_order(out_trade_no).status == OrderStatus.PAID

    engine.dispose()


def test_concurrent_trial_requests_grant_one_trial(tmp_path: Path) -> None:
    engine, session_factory, service = _service(tmp_path, "trial_race.db")

    def _request(_: int):
        try:
            return service.request_trial("race-user")
        except TrialAlreadyUsedError:
            return None

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(_request, range(10)))

    granted = [item for item in results if item is not None and item.trial_created]
    codes = {item.activation_code for item in results if item is not None}
    assert len(granted) == 1
    assert codes == {granted[0].activation_code}

    with session_scope(session_factory) as session:
        tokens = LicenseRepository(session).list_tokens("race-user")
        assert [item.source for item in tokens] == [TokenSource.TRIAL]

    engine.dispose()
