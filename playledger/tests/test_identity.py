import unittest

from playledger.identity import (
    STEAM_ID_BASE,
    LoginUsersUserProvider,
    RegistryUserProvider,
    account_id_to_steam_id,
    resolve_user_id,
    steam_id_to_account_id,
    to_steam2,
    to_steam3,
)


class _Source:
    def __init__(self, text: str):
        self.text = text

    def read_login_users(self) -> str:
        return self.text


class IdentityConversionTests(unittest.TestCase):
    def test_account_id_round_trip(self) -> None:
        steam_id = account_id_to_steam_id(22202)
        self.assertEqual(steam_id, 76561197960287930)
        self.assertEqual(steam_id_to_account_id(steam_id), 22202)

    def test_renderings(self) -> None:
        self.assertEqual(to_steam2(76561197960287930), "STEAM_0:0:11101")
        self.assertEqual(to_steam3(76561197960287930), "[U:1:22202]")

    def test_zero_means_nobody(self) -> None:
        self.assertIsNone(account_id_to_steam_id(0))
        self.assertIsNone(resolve_user_id("0x00000000"))
        self.assertIsNone(resolve_user_id(""))
        self.assertIsNone(resolve_user_id(None))

    def test_resolve_all_encodings(self) -> None:
        expected = 76561197960287930
        for raw in (22202, "22202", "0x000056BA", "STEAM_0:0:11101", "[U:1:22202]", str(expected), expected):
            self.assertEqual(resolve_user_id(raw), expected, raw)

    def test_out_of_range_ids(self) -> None:
        with self.assertRaises(ValueError):
            account_id_to_steam_id(2**32)
        with self.assertRaises(ValueError):
            steam_id_to_account_id(STEAM_ID_BASE - 1)

    def test_unparseable_value_resolves_to_none(self) -> None:
        self.assertIsNone(resolve_user_id("nobody"))


class UserProviderTests(unittest.TestCase):
    def test_registry_provider(self) -> None:
        provider = RegistryUserProvider(lambda: {"ActiveUser": "0x000056BA", "pid": "0x1"})
        self.assertEqual(provider.current_user_id(), 76561197960287930)
        self.assertIsNone(RegistryUserProvider(lambda: {"ActiveUser": "0x0"}).current_user_id())
        self.assertIsNone(RegistryUserProvider(lambda: {}).current_user_id())

    def test_login_users_provider(self) -> None:
        text = '"users" { "76561197960287930" { "AccountName" "a" "MostRecent" "1" } }'
        self.assertEqual(LoginUsersUserProvider(_Source(text)).current_user_id(), 76561197960287930)
        self.assertIsNone(LoginUsersUserProvider(_Source("")).current_user_id())
        self.assertIsNone(LoginUsersUserProvider(_Source('"users" {')).current_user_id())


if __name__ == "__main__":
    unittest.main()
