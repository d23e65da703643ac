# =============================================================================
# Market Info used in simulations
# =============================================================================
import numpy as np

# Long-run (1990-2023) annualized return parameters per asset class
domestic_stocks_mu = 0.102
domestic_stocks_sigma = 0.175
intl_stocks_mu = 0.085
intl_stocks_sigma = 0.195
bonds_mu = 0.048
bonds_sigma = 0.055
real_estate_mu = 0.092
real_estate_sigma = 0.185
cash_mu = 0.022
cash_sigma = 0.012

inflation_mu = 0.030
inflation_sigma = 0.015

# Order of rows/columns in corr_matrix and of every return vector
asset_classes = ["domestic_stocks", "intl_stocks", "bonds", "real_estate", "cash", "inflation"]

asset_params = {
    "domestic_stocks": (domestic_stocks_mu, domestic_stocks_sigma),
    "intl_stocks": (intl_stocks_mu, intl_stocks_sigma),
    "bonds": (bonds_mu, bonds_sigma),
    "real_estate": (real_estate_mu, real_estate_sigma),
    "cash": (cash_mu, cash_sigma),
    "inflation": (inflation_mu, inflation_sigma),
}

corr_matrix = np.array([
    # DomStk IntStk Bonds  RE    Cash  Infl
    [ 1.00,  0.82,  0.05, 0.58, 0.02, 0.05],
    [ 0.82,  1.00,  0.02, 0.55, 0.01, 0.08],
    [ 0.05,  0.02,  1.00, 0.18, 0.15, 0.42],
    [ 0.58,  0.55,  0.18, 1.00, 0.05, 0.25],
    [ 0.02,  0.01,  0.15, 0.05, 1.00, 0.65],
    [ 0.05,  0.08,  0.42, 0.25, 0.65, 1.00],
])

# Default portfolio mix when the plan does not supply one (must sum to 1)
default_allocation = {
    "domestic_stocks": 0.45,
    "intl_stocks": 0.15,
    "bonds": 0.30,
    "real_estate": 0.05,
    "cash": 0.05,
}
