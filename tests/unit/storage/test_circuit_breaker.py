"""Unit tests for the circuit breaker."""
import unittest

from docstore.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerPolicy,
    CircuitState,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestCircuitBreaker(unittest.TestCase):
    """Test cases for breaker state transitions."""

    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(
            's3',
            CircuitBreakerPolicy(failure_threshold=3, recovery_timeout=10.0),
            clock=self.clock
        )

    def open_breaker(self):
        for _ in range(3):
            self.assertTrue(self.breaker.allow_request())
            self.breaker.record_failure()

    def test_starts_closed(self):
        """Test a new breaker admits requests"""
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertTrue(self.breaker.allow_request())

    def test_opens_after_threshold_failures(self):
        """Test the breaker opens at the failure threshold"""
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

    def test_success_resets_consecutive_failures(self):
        """Test a success resets the consecutive failure count"""
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.failure_count, 2)

    def test_open_rejects_until_recovery_timeout(self):
        """Test an open breaker rejects until the recovery timeout"""
        self.open_breaker()
        self.assertFalse(self.breaker.allow_request())
        self.clock.advance(9)
        self.assertFalse(self.breaker.allow_request())
        self.clock.advance(1)
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

    def test_half_open_admits_exactly_one_probe(self):
        """Test half open admits a single trial request"""
        self.open_breaker()
        self.clock.advance(10)
        self.assertTrue(self.breaker.allow_request())
        self.assertFalse(self.breaker.allow_request())
        self.assertFalse(self.breaker.allow_request())

    def test_probe_success_closes(self):
        """Test a successful trial request closes the breaker"""
        self.open_breaker()
        self.clock.advance(10)
        self.assertTrue(self.breaker.allow_request())
        self.breaker.record_success()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.failure_count, 0)
        self.assertTrue(self.breaker.allow_request())

    def test_probe_failure_reopens_with_new_timestamp(self):
        """Test a failed trial request reopens the breaker"""
        self.open_breaker()
        self.clock.advance(10)
        self.assertTrue(self.breaker.allow_request())
        self.breaker.record_failure()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.clock.advance(9)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.clock.advance(1)
        self.assertEqual(self.breaker.state, CircuitState.HALF_OPEN)

    def test_success_threshold_needs_several_probes(self):
        """Test closing can require several successful trials"""
        breaker = CircuitBreaker(
            'azure',
            CircuitBreakerPolicy(failure_threshold=1, recovery_timeout=5.0,
                                 half_open_max_calls=2, success_threshold=2),
            clock=self.clock
        )
        breaker.record_failure()
        self.clock.advance(5)
        self.assertTrue(breaker.allow_request())
        self.assertTrue(breaker.allow_request())
        self.assertFalse(breaker.allow_request())
        breaker.record_success()
        self.assertEqual(breaker.state, CircuitState.HALF_OPEN)
        breaker.record_success()
        self.assertEqual(breaker.state, CircuitState.CLOSED)

    def test_release_frees_probe_slot(self):
        """Test releasing frees the trial slot"""
        self.open_breaker()
        self.clock.advance(10)
        self.assertTrue(self.breaker.allow_request())
        self.breaker.release()
        self.assertTrue(self.breaker.allow_request())

    def test_force_open_and_reset(self):
        """Test manual open and reset"""
        self.breaker.force_open()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertFalse(self.breaker.allow_request())
        self.breaker.reset()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.assertEqual(self.breaker.snapshot()['transitions'], [])

    def test_snapshot_records_transitions(self):
        """Test the snapshot lists state transitions"""
        self.open_breaker()
        snapshot = self.breaker.snapshot()
        self.assertEqual(snapshot['state'], 'open')
        self.assertEqual(snapshot['transitions'][-1]['from'], 'closed')
        self.assertEqual(snapshot['transitions'][-1]['to'], 'open')
        self.assertEqual(snapshot['opened_at'], self.clock.now)


if __name__ == '__main__':
    unittest.main()
