import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from backend.currency_conversion import RateProviderUnavailable
from backend.reporting import (
    BreakdownEntry,
    DailyTotal,
    ExpenseLine,
    WalletBalance,
    category_breakdown,
    daily_expense_totals,
    monthly_report,
    monthly_trend,
    summarize_dashboard,
    tag_breakdown,
)


class FakeRateService:
    def __init__(self, rates, failing=()) -> None:
        self.rates = rates
        self.failing = set(failing)
        self.calls: list[tuple] = []

    def get_rate(self, on_date, source, target) -> Decimal:
        self.calls.append((on_date, source, target))
        if source in self.failing:
            raise RateProviderUnavailable("Down")
        return self.rates[source]


class LockedRateService:
    def get_rate(self, on_date, source, target) -> Decimal:
        raise OperationalError("SELECT daily_exchange_rates", {}, Exception("database is locked"))


class DashboardSummaryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.today = date(2024, 5, 20)
        self.rates = FakeRateService({"EUR": Decimal("2"), "GBP": Decimal("3")})

    def test_totals_current_month_in_display_currency(self) -> None:
        expenses = [
            ExpenseLine(amount=Decimal("10"), date=date(2024, 5, 1), currency="USD"),
            ExpenseLine(amount=Decimal("5"), date=date(2024, 5, 2), currency="EUR"),
            ExpenseLine(amount=Decimal("100"), date=date(2024, 5, 3), currency="USD", kind="income"),
            ExpenseLine(amount=Decimal("999"), date=date(2024, 4, 30), currency="USD"),
        ]
        wallets = [
            WalletBalance(balance=Decimal("50"), currency="GBP"),
            WalletBalance(balance=Decimal("20"), currency=None),
        ]

        totals = summarize_dashboard(expenses, wallets, "usd", self.rates, today=self.today)

        self.assertEqual(totals.currency, "USD")
        self.assertEqual(totals.total_expenses, Decimal("20"))
        self.assertEqual(totals.total_income, Decimal("100"))
        self.assertEqual(totals.total_balance, Decimal("170"))
        self.assertEqual(totals.net_savings, Decimal("80"))
        self.assertIn((self.today, "GBP", "USD"), self.rates.calls)

    def test_failed_lookup_adds_raw_amount(self) -> None:
        rates = FakeRateService({}, failing={"JPY"})
        expenses = [
            ExpenseLine(amount=Decimal("300"), date=date(2024, 5, 4), currency="JPY"),
            ExpenseLine(amount=Decimal("1"), date=date(2024, 5, 4), currency="USD"),
        ]

        totals = summarize_dashboard(expenses, [], "USD", rates, today=self.today)

        self.assertEqual(totals.total_expenses, Decimal("301"))

    def test_database_error_during_lookup_adds_raw_amount(self) -> None:
        expenses = [
            ExpenseLine(amount=Decimal("5"), date=date(2024, 5, 4), currency="EUR"),
            ExpenseLine(amount=Decimal("1"), date=date(2024, 5, 4), currency="USD"),
        ]

        totals = summarize_dashboard(expenses, [], "USD", LockedRateService(), today=self.today)

        self.assertEqual(totals.total_expenses, Decimal("6"))

    def test_uncategorized_rows_count_as_neither_income_nor_expense(self) -> None:
        expenses = [
            ExpenseLine(amount=Decimal("10"), date=date(2024, 5, 1), currency="USD"),
            ExpenseLine(amount=Decimal("40"), date=date(2024, 5, 1), currency="USD", kind=None),
        ]

        totals = summarize_dashboard(expenses, [], "USD", self.rates, today=self.today)

        self.assertEqual(totals.total_expenses, Decimal("10"))
        self.assertEqual(totals.total_income, Decimal("0"))

    def test_rate_looked_up_once_per_date_and_currency(self) -> None:
        expenses = [
            ExpenseLine(amount=Decimal("1"), date=date(2024, 5, 6), currency="EUR"),
            ExpenseLine(amount=Decimal("2"), date=date(2024, 5, 6), currency="EUR"),
            ExpenseLine(amount=Decimal("3"), date=date(2024, 5, 7), currency="EUR"),
        ]

        totals = summarize_dashboard(expenses, [], "USD", self.rates, today=self.today)

        self.assertEqual(totals.total_expenses, Decimal("12"))
        self.assertEqual(len(self.rates.calls), 2)


class DailyExpenseTotalsTests(unittest.TestCase):
    def test_trailing_week_of_expenses(self) -> None:
        rates = FakeRateService({"EUR": Decimal("2")})
        expenses = [
            ExpenseLine(amount=Decimal("4"), date=date(2024, 5, 20), currency="EUR"),
            ExpenseLine(amount=Decimal("6"), date=date(2024, 5, 14), currency="USD"),
            ExpenseLine(amount=Decimal("50"), date=date(2024, 5, 14), currency="USD", kind="income"),
            ExpenseLine(amount=Decimal("7"), date=date(2024, 5, 13), currency="USD"),
        ]

        totals = daily_expense_totals(expenses, "USD", rates, today=date(2024, 5, 20))

        self.assertEqual(len(totals), 7)
        self.assertEqual(
            totals[0], DailyTotal(date=date(2024, 5, 14), label="Tue", amount=Decimal("6"))
        )
        self.assertEqual(totals[-1].amount, Decimal("8"))
        self.assertEqual(sum(entry.amount for entry in totals), Decimal("14"))

    def test_rejects_empty_window(self) -> None:
        with self.assertRaises(ValueError):
            daily_expense_totals([], "USD", FakeRateService({}), today=date(2024, 5, 20), days=0)


class MonthlyReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = FakeRateService({"EUR": Decimal("2")})
        self.lines = [
            ExpenseLine(amount=Decimal("1000"), date=date(2024, 5, 1), currency="USD", kind="income"),
            ExpenseLine(
                amount=Decimal("200"),
                date=date(2024, 5, 2),
                currency="EUR",
                category_id=1,
                category_name="Food",
            ),
            ExpenseLine(
                amount=Decimal("100"),
                date=date(2024, 5, 10),
                currency="USD",
                category_id=2,
                category_name="Rent",
            ),
            ExpenseLine(amount=Decimal("50"), date=date(2024, 5, 11), currency="USD", kind=None),
            ExpenseLine(amount=Decimal("70"), date=date(2024, 4, 30), currency="USD", category_id=2),
        ]

    def test_totals_and_savings_rate_for_month(self) -> None:
        report = monthly_report(self.lines, date(2024, 5, 17), "USD", self.rates)

        self.assertEqual(report.month, date(2024, 5, 1))
        self.assertEqual(report.income, Decimal("1000"))
        self.assertEqual(report.expense, Decimal("500"))
        self.assertEqual(report.savings, Decimal("500"))
        self.assertEqual(report.savings_rate, Decimal("50.00"))

    def test_category_and_daily_spending(self) -> None:
        report = monthly_report(self.lines, date(2024, 5, 1), "USD", self.rates)

        self.assertEqual(
            report.categories,
            [
                BreakdownEntry(key="1", name="Food", amount=Decimal("400")),
                BreakdownEntry(key="2", name="Rent", amount=Decimal("100")),
                BreakdownEntry(key="uncategorized", name="Uncategorized", amount=Decimal("50")),
            ],
        )
        self.assertEqual(len(report.daily), 31)
        self.assertEqual(report.daily[1].amount, Decimal("400"))
        self.assertEqual(report.daily[9].amount, Decimal("100"))
        self.assertEqual(report.daily[10].amount, Decimal("0"))

    def test_month_without_income_has_zero_savings_rate(self) -> None:
        report = monthly_report(self.lines, date(2024, 4, 1), "USD", self.rates)

        self.assertEqual(report.income, Decimal("0"))
        self.assertEqual(report.savings, Decimal("-70"))
        self.assertEqual(report.savings_rate, Decimal("0"))


class BreakdownTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = FakeRateService({"EUR": Decimal("2")})

    def test_tag_breakdown_counts_full_amount_per_tag(self) -> None:
        lines = [
            ExpenseLine(
                amount=Decimal("10"),
                date=date(2024, 5, 1),
                currency="USD",
                tags=((1, "Food"), (2, "Work")),
            ),
            ExpenseLine(amount=Decimal("3"), date=date(2024, 5, 2), currency="EUR"),
            ExpenseLine(
                amount=Decimal("500"),
                date=date(2024, 5, 3),
                currency="USD",
                kind="income",
                tags=((2, "Work"),),
            ),
        ]

        entries = tag_breakdown(lines, "USD", self.rates)

        self.assertEqual(
            entries,
            [
                BreakdownEntry(key="1", name="Food", amount=Decimal("10")),
                BreakdownEntry(key="2", name="Work", amount=Decimal("10")),
                BreakdownEntry(key="no-tags", name="No Tags", amount=Decimal("6")),
            ],
        )

    def test_category_breakdown_respects_date_window(self) -> None:
        lines = [
            ExpenseLine(amount=Decimal("8"), date=date(2024, 5, 1), category_id=4, category_name="Fuel"),
            ExpenseLine(amount=Decimal("9"), date=date(2024, 6, 1), category_id=4, category_name="Fuel"),
        ]

        entries = category_breakdown(
            lines, "USD", self.rates, start=date(2024, 5, 1), end=date(2024, 5, 31)
        )

        self.assertEqual(entries, [BreakdownEntry(key="4", name="Fuel", amount=Decimal("8"))])


class MonthlyTrendTests(unittest.TestCase):
    def test_six_months_ending_with_current_month(self) -> None:
        rates = FakeRateService({"EUR": Decimal("2")})
        lines = [
            ExpenseLine(amount=Decimal("100"), date=date(2024, 1, 5), currency="USD", kind="income"),
            ExpenseLine(amount=Decimal("15"), date=date(2024, 1, 9), currency="EUR"),
            ExpenseLine(amount=Decimal("10"), date=date(2023, 11, 30), currency="USD"),
            ExpenseLine(amount=Decimal("7"), date=date(2024, 5, 2), currency="USD", kind=None),
        ]

        trend = monthly_trend(lines, "USD", rates, today=date(2024, 5, 20))

        self.assertEqual([point.label for point in trend], ["Dec", "Jan", "Feb", "Mar", "Apr", "May"])
        self.assertEqual(trend[1].month, date(2024, 1, 1))
        self.assertEqual((trend[1].income, trend[1].expense), (Decimal("100"), Decimal("30")))
        self.assertEqual(trend[-1].expense, Decimal("0"))
        self.assertEqual(trend[0].expense, Decimal("0"))

    def test_rejects_empty_window(self) -> None:
        with self.assertRaises(ValueError):
            monthly_trend([], "USD", FakeRateService({}), today=date(2024, 5, 20), months=0)


if __name__ == "__main__":
    unittest.main()
