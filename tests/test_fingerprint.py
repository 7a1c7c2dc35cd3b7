from spending_analyzer.ingest.fingerprint import fingerprint, decode_fingerprint, normalize_layout

from conftest import westpac_statement


def test_same_template_different_period_matches():
    july = westpac_statement()
    august = westpac_statement(
        rows=[
            ("03/08/2024", "WOOLWORTHS 1234 SYDNEY", "102.75"),
            ("06/08/2024", "NETFLIX.COM MELBOURNE", "16.99"),
            ("11/08/2024", "SHELL COLES EXPRESS", "1,064.10"),
            ("15/08/2024", "JB HI-FI BROADWAY", "9.00"),
            ("22/08/2024", "UBER TRIP HELP.UBER.COM", "41.80"),
            ("29/08/2024", "TELSTRA PREPAID", "30.00"),
        ],
        account="062914 98765432",
        opening="807.26",
        closing="12.55",
        period=("01/08/2024", "31/08/2024"),
    )
    assert fingerprint(july) == fingerprint(august)


def test_different_templates_differ():
    westpac = westpac_statement()
    other = westpac.replace("WESTPAC BANKING CORPORATION", "ING DIRECT SAVINGS MAXIMISER")
    assert fingerprint(westpac) != fingerprint(other)


def test_only_first_page_window_counts():
    base = "HEADER LINE\n" + "x" * 2100
    assert fingerprint(base + "tail one") == fingerprint(base + "completely different tail")


def test_fingerprint_is_reversible_normalized_layout():
    text = "Statement 12/03/2024  Balance $1,234.56   Account 123456789"
    decoded = decode_fingerprint(fingerprint(text))
    assert decoded == "statement date balance amount account number"
    assert decoded == normalize_layout(text)


def test_fingerprint_keeps_first_500_normalized_chars():
    text = "word " * 400
    assert len(decode_fingerprint(fingerprint(text))) == 500


def test_month_name_periods_do_not_change_fingerprint():
    header = "AMERICAN EXPRESS\nStatement Period {} - {}\nClosing Date {}\nCard Member Account\n"
    july = header.format("26 Jul 2024", "25 Aug 2024", "August 25, 2024")
    august = header.format("26 Aug 2024", "25 Sep 2024", "September 25, 2024")

    assert fingerprint(july) == fingerprint(august)
    assert normalize_layout(july) == (
        "american express statement period date - date closing date date card member account"
    )


def test_month_names_inside_words_are_kept():
    assert normalize_layout("12 Market Street") == "12 market street"
