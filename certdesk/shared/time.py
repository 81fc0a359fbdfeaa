from datetime import date, datetime, timezone

_MONTH_NAMES = {
    "en": (
        "January",
        "February",
        "March",
        "April",
        "May",
        "June",
        "July",
        "August",
        "September",
        "October",
        "November",
        "December",
    ),
    "id": (
        "Januari",
        "Februari",
        "Maret",
        "April",
        "Mei",
        "Juni",
        "Juli",
        "Agustus",
        "September",
        "Oktober",
        "November",
        "Desember",
    ),
}

_ROMAN_MONTHS = ("I", "II", "III", "IV", "V", "VI", "VII", "VIII", "IX", "X", "XI", "XII")


def now_utc() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def today() -> date:
    return date.today()


def format_long_date(value: date | datetime, locale: str | None = "en") -> str:
    """Render ``value`` as ``D Month YYYY`` using the locale's month names."""
    lang = (locale or "en").strip().lower().replace("_", "-").split("-")[0]
    months = _MONTH_NAMES.get(lang, _MONTH_NAMES["en"])
    return f"{value.day} {months[value.month - 1]} {value.year}"


def roman_month(month: int) -> str:
    if not 1 <= int(month) <= 12:
        raise ValueError(f"Month out of range: {month!r}")
    return _ROMAN_MONTHS[int(month) - 1]
