from dataclasses import fields
from typing import Any, Dict, List, Optional

from drawdown.models import Account, PlannerInputs, PlanSettings, StateTaxRule
from drawdown.utils.currency import clean_currency, clean_percent

# Fields that arrive as "$1,234" style strings from forms or JSON
CURRENCY_FIELDS = (
    "annual_spending",
    "annual_income",
    "social_security_income",
    "pension_income",
    "other_income",
    "tax_exempt_interest",
    "max_annual_conversion",
    "magi_1",
    "magi_2",
)
# Fields that arrive as "22%" or 22 and are stored as fractions
PERCENT_FIELDS = ("roth_target_bracket",)

SETTINGS_FIELDS = {f.name for f in fields(PlanSettings)}


def _build_account(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row.get("id") or row.get("name")),
        name=row.get("name") or str(row.get("id")),
        tax_type=row.get("tax_type", row.get("tax", "taxable")),
        balance=clean_currency(row.get("balance", 0.0)),
        expected_return=clean_percent(row.get("expected_return", 0.06)),
        exclude_from_withdrawals=bool(row.get("exclude_from_withdrawals", False)),
    )


def _build_settings(raw: Optional[Dict[str, Any]]) -> PlanSettings:
    raw = dict(raw or {})
    owner = raw.pop("excess_income_owner", None)
    save_percentage = raw.pop("excess_income_save_percentage", 100.0)
    if "target_bracket" in raw:
        raw["target_bracket"] = clean_percent(raw["target_bracket"])
    settings = PlanSettings(**{k: v for k, v in raw.items() if k in SETTINGS_FIELDS})
    if owner:
        settings.set_excess_income_owner(owner, clean_currency(save_percentage))
    return settings


def get_planner_inputs(
    portfolio_data: List[Dict],  # Only list arguments that need special processing
    **kwargs: Any                # Catch all other inputs dynamically
) -> PlannerInputs:
    """
    Builds PlannerInputs from loose form/JSON values, using reflection
    (dataclasses.fields) so only valid fields are passed.
    """
    inputs_dict = dict(kwargs)

    # 1. 'num_simulations' is the form name for the 'nsims' field
    if "num_simulations" in inputs_dict:
        inputs_dict["nsims"] = inputs_dict.pop("num_simulations")

    # 2. Coerce currency and percent strings
    for key in CURRENCY_FIELDS:
        if key in inputs_dict:
            inputs_dict[key] = clean_currency(inputs_dict[key])
    for key in PERCENT_FIELDS:
        if key in inputs_dict:
            inputs_dict[key] = clean_percent(inputs_dict[key])

    # 3. Nested records
    inputs_dict["accounts"] = [_build_account(row) for row in portfolio_data]
    if isinstance(inputs_dict.get("state_rule"), dict):
        inputs_dict["state_rule"] = StateTaxRule(**inputs_dict["state_rule"])
    if not isinstance(inputs_dict.get("settings"), PlanSettings):
        inputs_dict["settings"] = _build_settings(inputs_dict.get("settings"))

    # 4. Keep only keys that are PlannerInputs fields
    planner_field_names = {f.name for f in fields(PlannerInputs)}
    final_inputs = {
        key: value
        for key, value in inputs_dict.items()
        if key in planner_field_names
    }

    return PlannerInputs(**final_inputs)
