import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from divinenex.locks import InMemorySweepLock, RedisSweepLock


class InMemorySweepLockTests(unittest.TestCase):
    def test_second_acquire_fails_until_release(self):
        lock = InMemorySweepLock()
        self.assertTrue(lock.acquire("sweep", 60))
        self.assertFalse(lock.acquire("sweep", 60))
        self.assertTrue(lock.acquire("reconcile", 60))
        lock.release("sweep")
        self.assertTrue(lock.acquire("sweep", 60))

    def test_expired_lock_can_be_taken(self):
        lock = InMemorySweepLock()
        self.assertTrue(lock.acquire("sweep", 0))
        self.assertTrue(lock.acquire("sweep", 60))


class RedisSweepLockTests(unittest.TestCase):
    @patch("divinenex.locks.redis.Redis.from_url")
    def test_acquire_uses_set_nx_px(self, from_url):
        client = MagicMock()
        client.set.return_value = True
        from_url.return_value = client
        lock = RedisSweepLock(url="redis://localhost:6379/0")

        self.assertTrue(lock.acquire("sweep", 3600))

        args, kwargs = client.set.call_args
        self.assertEqual(args[0], "divinenex:lock:sweep")
        self.assertTrue(kwargs["nx"])
        self.assertEqual(kwargs["px"], 3_600_000)

        lock.release("sweep")
        eval_args = client.eval.call_args[0]
        self.assertEqual(eval_args[2], "divinenex:lock:sweep")
        self.assertEqual(eval_args[3], args[1])

    @patch("divinenex.locks.redis.Redis.from_url")
    def test_contended_lock_is_not_acquired(self, from_url):
        client = MagicMock()
        client.set.return_value = None
        from_url.return_value = client
        lock = RedisSweepLock(url="redis://localhost:6379/0")
        self.assertFalse(lock.acquire("sweep", 60))
        lock.release("sweep")
        client.eval.assert_not_called()

    @patch("divinenex.locks.redis.Redis.from_url")
    def test_connection_error_skips_run_and_reconnects(self, from_url):
        client = MagicMock()
        client.set.side_effect = redis_exceptions.ConnectionError("reset")
        from_url.return_value = client
        lock = RedisSweepLock(url="redis://localhost:6379/0")
        self.assertFalse(lock.acquire("sweep", 60))
        self.assertEqual(from_url.call_count, 2)

    @patch("divinenex.locks.redis.Redis.from_url")
    def test_client_is_built_with_socket_timeouts(self, from_url):
        RedisSweepLock(url="redis://localhost:6379/0", timeout_seconds=2.5)
        _, kwargs = from_url.call_args
        self.assertEqual(kwargs["socket_timeout"], 2.5)
        self.assertEqual(kwargs["socket_connect_timeout"], 2.5)

    @patch("divinenex.locks.redis.Redis.from_url")
    def test_server_error_skips_run(self, from_url):
        client = MagicMock()
        client.set.side_effect = redis_exceptions.ResponseError(
            "READONLY You can't write against a read only replica."
        )
        from_url.return_value = client
        lock = RedisSweepLock(url="redis://localhost:6379/0")
        self.assertFalse(lock.acquire("sweep", 60))

    @patch("divinenex.locks.redis.Redis.from_url")
    def test_release_timeout_is_logged_not_raised(self, from_url):
        client = MagicMock()
        client.set.return_value = True
        client.eval.side_effect = redis_exceptions.TimeoutError("Timeout reading from socket")
        from_url.return_value = client
        lock = RedisSweepLock(url="redis://localhost:6379/0")
        self.assertTrue(lock.acquire("sweep", 60))
        with self.assertLogs("divinenex.locks", "WARNING"):
            lock.release("sweep")


if __name__ == "__main__":
    unittest.main()
