import unittest

from chat_assembler.strategy import BackendStrategy, has_credential, select_strategy


class SelectStrategyTests(unittest.TestCase):
    def test_force_proxy_wins_over_credential(self) -> None:
        self.assertEqual(
            BackendStrategy.PROXY_GATEWAY,
            select_strategy(force_proxy=True, has_credential=True, prefer_streaming=True),
        )

    def test_missing_credential_uses_proxy(self) -> None:
        self.assertEqual(
            BackendStrategy.PROXY_GATEWAY,
            select_strategy(force_proxy=False, has_credential=False, prefer_streaming=True),
        )
        self.assertEqual(
            BackendStrategy.PROXY_GATEWAY,
            select_strategy(force_proxy=False, has_credential=False, prefer_streaming=False),
        )

    def test_credential_with_streaming_uses_native(self) -> None:
        self.assertEqual(
            BackendStrategy.NATIVE_STREAMING,
            select_strategy(force_proxy=False, has_credential=True, prefer_streaming=True),
        )

    def test_credential_without_streaming_is_synchronous(self) -> None:
        self.assertEqual(
            BackendStrategy.SYNCHRONOUS,
            select_strategy(force_proxy=False, has_credential=True, prefer_streaming=False),
        )

    def test_only_synchronous_is_non_streaming(self) -> None:
        self.assertTrue(BackendStrategy.PROXY_GATEWAY.is_streaming)
        self.assertTrue(BackendStrategy.NATIVE_STREAMING.is_streaming)
        self.assertFalse(BackendStrategy.SYNCHRONOUS.is_streaming)


class HasCredentialTests(unittest.TestCase):
    def test_blank_keys_count_as_absent(self) -> None:
        self.assertFalse(has_credential(None))
        self.assertFalse(has_credential(""))
        self.assertFalse(has_credential("   "))
        self.assertTrue(has_credential("sk-test"))


if __name__ == "__main__":
    unittest.main()
