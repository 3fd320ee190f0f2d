import asyncio
import unittest

from dao_ingestion.rate_limit import TokenBucket

from fakes import FakeClock


class TestTokenBucket(unittest.IsolatedAsyncioTestCase):
    def test_never_exceeds_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=5, refill_rate=5, clock=clock)
        for _ in range(5):
            self.assertTrue(bucket.try_acquire())
        self.assertFalse(bucket.try_acquire())

        clock.advance(3600)
        bucket.try_acquire(0)
        self.assertEqual(bucket.tokens, 5)

    def test_partial_refill(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=4, refill_rate=2, clock=clock)
        for _ in range(4):
            bucket.try_acquire()
        clock.advance(1.0)
        self.assertTrue(bucket.try_acquire())
        self.assertTrue(bucket.try_acquire())
        self.assertFalse(bucket.try_acquire())

    def test_per_interval(self):
        bucket = TokenBucket.per_interval(30, 60.0)
        self.assertEqual(bucket.capacity, 30)
        self.assertAlmostEqual(bucket.refill_rate, 0.5)

    async def test_concurrent_acquire_never_goes_negative(self):
        bucket = TokenBucket(capacity=2, refill_rate=200)
        await asyncio.gather(*(bucket.acquire() for _ in range(8)))
        self.assertGreaterEqual(bucket.tokens, 0)
        self.assertLessEqual(bucket.tokens, bucket.capacity)

    async def test_acquire_more_than_capacity_rejected(self):
        bucket = TokenBucket(capacity=1, refill_rate=1)
        with self.assertRaises(ValueError):
            await bucket.acquire(2)

    def test_invalid_parameters(self):
        with self.assertRaises(ValueError):
            TokenBucket(capacity=0, refill_rate=1)


if __name__ == "__main__":
    unittest.main()
