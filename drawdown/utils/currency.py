# utils/currency.py
from typing import Union

# ----------------------------------------------------------------------
# Helper Functions
# ----------------------------------------------------------------------

def clean_currency(val) -> float:
    """
    Cleans a currency string (e.g., "$140,000.00") into a float (140000.0).
    Blank input is 0.0; anything else that does not parse raises ValueError.
    """
    if val is None:
        return 0.0
    if isinstance(val, (int, float)):
        return float(val)

    # Strip currency symbols and grouping, then convert to float.
    cleaned_val = str(val).replace('$', '').replace(',', '').strip()
    if not cleaned_val:
        return 0.0
    return float(cleaned_val)


def clean_percent(raw_input: Union[str, float, int, None]) -> Union[float, None]:
    """
    Cleans raw input (e.g., '0.23', '23%', '23') and converts it to a float
    where 1.0 represents 100%. Handles flexible user input.
    """
    if raw_input is None:
        return None

    if isinstance(raw_input, (float, int)):
        # A number between 1 and 100 is a percentage, e.g. 23 -> 0.23
        if 1.0 <= float(raw_input) <= 100.0:
            return float(raw_input) / 100.0
        return float(raw_input)

    s = str(raw_input).strip()
    if not s:
        return None

    explicit_percent = s.endswith('%')
    s = s.replace('%', '').replace(',', '').replace(' ', '').strip()
    numeric_val = float(s)

    if explicit_percent or 1.0 <= numeric_val <= 100.0:
        return numeric_val / 100.0

    # Already a decimal like 0.23
    return numeric_val


def format_percent_output(value: Union[float, None], decimal_places: int = 1) -> str:
    """Formats a float (0.23) to a display string ('23.0%')."""
    if value is None:
        return ""
    return f"{float(value) * 100:.{decimal_places}f}%"


def format_currency_output(val, decimals=0) -> str:
    """Formats a float/int into a currency string ($1,234,567)."""
    if val is None:
        val = 0.0
    return f"${val:,.{decimals}f}"
