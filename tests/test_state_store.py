import threading

from pocketbook.app.bank_integration.state_store import InMemoryOAuthStateStore


class FakeMonotonic:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestIssue:
    def test_issue_returns_128_bit_hex_token(self):
        store = InMemoryOAuthStateStore()

        token = store.issue()

        assert len(token) == 32
        int(token, 16)

    def test_issued_tokens_are_distinct(self):
        store = InMemoryOAuthStateStore()

        tokens = {store.issue() for _ in range(200)}

        assert len(tokens) == 200
        assert len(store) == 200

    def test_issue_sweeps_expired_states(self):
        clock = FakeMonotonic()
        store = InMemoryOAuthStateStore(ttl_seconds=600, clock=clock)
        store.issue()
        store.issue()

        clock.now += 601
        store.issue()

        assert len(store) == 1


class TestValidateAndConsume:
    def test_valid_state_is_accepted_once(self):
        store = InMemoryOAuthStateStore()
        token = store.issue()

        assert store.validate_and_consume(token) is True
        assert store.validate_and_consume(token) is False

    def test_unknown_state_is_rejected(self):
        store = InMemoryOAuthStateStore()
        store.issue()

        assert store.validate_and_consume("0" * 32) is False
        assert store.validate_and_consume("") is False

    def test_state_is_valid_up_to_its_ttl(self):
        clock = FakeMonotonic()
        store = InMemoryOAuthStateStore(ttl_seconds=600, clock=clock)
        token = store.issue()

        clock.now += 600

        assert store.validate_and_consume(token) is True

    def test_expired_state_is_rejected_and_removed(self):
        clock = FakeMonotonic()
        store = InMemoryOAuthStateStore(ttl_seconds=600, clock=clock)
        token = store.issue()

        clock.now += 601

        assert store.validate_and_consume(token) is False
        assert len(store) == 0

    def test_sweep_expired_reports_removed_count(self):
        clock = FakeMonotonic()
        store = InMemoryOAuthStateStore(ttl_seconds=60, clock=clock)
        store.issue()
        store.issue()
        clock.now += 30
        kept = store.issue()
        clock.now += 31

        assert store.sweep_expired() == 2
        assert store.validate_and_consume(kept) is True


class TestConcurrency:
    def test_each_state_is_consumed_by_exactly_one_thread(self):
        store = InMemoryOAuthStateStore()
        tokens = [store.issue() for _ in range(50)]
        results = []
        results_lock = threading.Lock()

        def consume_all():
            accepted = [t for t in tokens if store.validate_and_consume(t)]
            with results_lock:
                results.extend(accepted)

        threads = [threading.Thread(target=consume_all) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == sorted(tokens)
        assert len(store) == 0
