import io
import json
import unittest
from decimal import Decimal
from http.client import RemoteDisconnected
from unittest import mock
from urllib.error import URLError

from cuentas.currency_conversion import (
    DolarApiProvider,
    ExchangeRateApiProvider,
    MarketRateProvider,
    RateProviderUnavailable,
    StaticRateProvider,
    append_note,
    build_amount_snapshot,
    display_amount,
    fetch_rate_snapshot,
    has_snapshot,
    normalize_currency,
    original_currency_note,
    project_for_display,
)
from cuentas.transactions import Transaction


def make_transaction(**overrides) -> Transaction:
    values = {
        "id": 1,
        "desc": "Cena",
        "amount": Decimal("100"),
        "tag": "Comida",
        "type": "expense",
        "date": "Hoy",
    }
    values.update(overrides)
    return Transaction(**values)


def json_response(payload: dict) -> mock.MagicMock:
    response = mock.MagicMock()
    response.__enter__.return_value = io.BytesIO(json.dumps(payload).encode("utf-8"))
    return response


class RateSnapshotTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(
            rates={
                "USD": Decimal("1"),
                "ILS": Decimal("4"),
                "EUR": Decimal("0.5"),
                "ARS": Decimal("1000"),
            }
        )

    def test_snapshot_converts_through_usd(self) -> None:
        rates = fetch_rate_snapshot(self.provider)

        snapshot = build_amount_snapshot(Decimal("100"), "usd", rates)

        self.assertEqual(snapshot.amount_usd, Decimal("100.00"))
        self.assertEqual(snapshot.amount_ils, Decimal("400.00"))
        self.assertEqual(snapshot.amount_eur, Decimal("50.00"))
        self.assertEqual(snapshot.amount_ars, Decimal("100000.00"))
        self.assertEqual(snapshot.stored_amount, Decimal("400.00"))

    def test_stored_amount_is_ils_value(self) -> None:
        rates = fetch_rate_snapshot(self.provider)

        fields = build_amount_snapshot(Decimal("200"), "ILS", rates).as_fields()

        self.assertEqual(fields["amount"], Decimal("200.00"))
        self.assertEqual(fields["amount_usd"], Decimal("50.00"))
        self.assertEqual(fields["amount_ars"], Decimal("50000.00"))

    def test_missing_currency_aborts(self) -> None:
        provider = StaticRateProvider(rates={"USD": Decimal("1"), "ILS": Decimal("3.7")})

        with self.assertRaises(RateProviderUnavailable):
            fetch_rate_snapshot(provider)

    def test_non_positive_rate_aborts(self) -> None:
        provider = StaticRateProvider(
            rates={
                "USD": Decimal("1"),
                "ILS": Decimal("3.7"),
                "EUR": Decimal("0"),
                "ARS": Decimal("900"),
            }
        )

        with self.assertRaises(RateProviderUnavailable):
            fetch_rate_snapshot(provider)

    def test_unsupported_currency_raises(self) -> None:
        with self.assertRaises(ValueError):
            normalize_currency("GBP")
        self.assertEqual(normalize_currency(" eur "), "EUR")


class OriginalCurrencyNoteTests(unittest.TestCase):
    def test_note_only_for_foreign_currency(self) -> None:
        self.assertIsNone(original_currency_note(Decimal("10"), "ILS"))
        self.assertEqual(
            original_currency_note(Decimal("12.50"), "usd"),
            "*(Cargado originalmente como USD 12.5)*",
        )
        self.assertEqual(
            original_currency_note(Decimal("100"), "ARS"),
            "*(Cargado originalmente como ARS 100)*",
        )

    def test_note_appended_after_details(self) -> None:
        self.assertEqual(append_note("Con amigos", "nota"), "Con amigos\n\nnota")
        self.assertEqual(append_note(None, "nota"), "nota")
        self.assertEqual(append_note("Con amigos", None), "Con amigos")


class DisplayProjectionTests(unittest.TestCase):
    def test_uses_snapshot_when_present(self) -> None:
        txn = make_transaction(amount_usd=Decimal("25"))

        self.assertEqual(display_amount(txn, "usd"), Decimal("25"))
        self.assertTrue(has_snapshot(txn, "USD"))

    def test_falls_back_to_stored_amount(self) -> None:
        txn = make_transaction(amount_usd=Decimal("25"))

        with self.assertLogs("cuentas.currency_conversion", level="DEBUG"):
            self.assertEqual(display_amount(txn, "EUR"), Decimal("100"))
        self.assertFalse(has_snapshot(txn, "EUR"))

    def test_projection_leaves_inputs_untouched(self) -> None:
        txn = make_transaction(amount_ars=Decimal("95000"))

        projected = project_for_display([txn], "ARS")

        self.assertEqual(projected[0].amount, Decimal("95000"))
        self.assertEqual(txn.amount, Decimal("100"))


class LiveProviderTests(unittest.TestCase):
    def test_exchange_rate_api_caches_rates(self) -> None:
        provider = ExchangeRateApiProvider(timeout_seconds=2)
        payload = {"base": "USD", "rates": {"ILS": 3.7, "EUR": 0.92, "ARS": 870}}

        with mock.patch(
            "cuentas.currency_conversion.urlopen",
            return_value=json_response(payload),
        ) as urlopen:
            first = provider.get_rates()
            second = provider.get_rates()

        self.assertEqual(first["ILS"], Decimal("3.7"))
        self.assertEqual(first["USD"], Decimal("1"))
        self.assertEqual(first, second)
        urlopen.assert_called_once_with(
            "https://api.exchangerate-api.com/v4/latest/USD",
            timeout=2,
        )

    def test_network_failure_raises_unavailable(self) -> None:
        provider = ExchangeRateApiProvider()

        with mock.patch(
            "cuentas.currency_conversion.urlopen",
            side_effect=URLError("offline"),
        ):
            with self.assertRaises(RateProviderUnavailable):
                provider.get_rates()

    def test_dropped_connection_raises_unavailable(self) -> None:
        with mock.patch(
            "cuentas.currency_conversion.urlopen",
            side_effect=RemoteDisconnected("closed"),
        ):
            with self.assertRaises(RateProviderUnavailable):
                ExchangeRateApiProvider().get_rates()

    def test_undecodable_body_raises_unavailable(self) -> None:
        response = mock.MagicMock()
        response.__enter__.return_value = io.BytesIO(b"\xff\xfe\xfa not json")

        with mock.patch("cuentas.currency_conversion.urlopen", return_value=response):
            with self.assertRaises(RateProviderUnavailable):
                DolarApiProvider().get_ars_rate()

    def test_dolar_api_reads_selling_rate(self) -> None:
        with mock.patch(
            "cuentas.currency_conversion.urlopen",
            return_value=json_response({"compra": 1200, "venta": 1235}),
        ):
            self.assertEqual(DolarApiProvider().get_ars_rate(), Decimal("1235"))

    def test_dolar_api_without_selling_rate_raises(self) -> None:
        with mock.patch(
            "cuentas.currency_conversion.urlopen",
            return_value=json_response({"compra": 1200}),
        ):
            with self.assertRaises(RateProviderUnavailable):
                DolarApiProvider().get_ars_rate()

    def test_market_provider_overrides_ars(self) -> None:
        global_provider = mock.Mock()
        global_provider.get_rates.return_value = {
            "USD": Decimal("1"),
            "ILS": Decimal("3.7"),
            "EUR": Decimal("0.9"),
            "ARS": Decimal("900"),
        }
        ars_provider = mock.Mock()
        ars_provider.get_ars_rate.return_value = Decimal("1200")

        rates = MarketRateProvider(global_provider, ars_provider).get_rates()

        self.assertEqual(rates["ARS"], Decimal("1200"))
        self.assertEqual(rates["ILS"], Decimal("3.7"))


if __name__ == "__main__":
    unittest.main()
