"""
lendpool - Collateralized NFT Lending Ledger

Pooled lending against non-fungible collateral: suppliers deposit a fungible
token for proportional supply shares, borrowers lock collateral items and
borrow the token, and unhealthy positions are liquidated.

Usage:
    from lendpool import (
        Ledger, Move, build_transaction, fungible_token, collateral_item,
        StaticPriceOracle, StaticAccessController, InterestRateModel,
        RiskEngine, RiskParameters, LendingPool, SYSTEM_WALLET, wad,
    )

    ledger = Ledger("main", test_mode=True)
    ledger.register_unit(fungible_token("USDC", "USD Coin", decimals=6))
    ledger.register_unit(collateral_item("PUNK", 7))
    for wallet in ("lender", "alice"):
        ledger.register_wallet(wallet)
    ledger.execute(build_transaction(ledger, [
        Move(2_000_000_000, "USDC", SYSTEM_WALLET, "lender", "faucet"),
        Move(1, "PUNK#7", SYSTEM_WALLET, "alice", "mint"),
    ]))

    oracle = StaticPriceOracle({"PUNK": 1000 * 10**8, "USDC": 10**8})
    pool = LendingPool.create(
        ledger, "PUNK-USDC", "Punks / USDC",
        collateral_collection="PUNK", debt_asset="USDC",
        rate_model=InterestRateModel.fixed(wad("0.10")),
        risk=RiskEngine(oracle),
        access=StaticAccessController(admins={"governance"}),
        loan_to_value=wad("0.8"),
    )
    pool.set_risk_parameters("governance", RiskParameters(wad("0.9"), wad("0.1"), wad("1")))

    pool.supply_liquidity("lender", 2_000_000_000)
    pool.supply_collateral("alice", 7)
    pool.borrow("alice", 800_000_000)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    AssetKind,
    AssetSpec,
    fungible_asset,
    non_fungible_asset,
    asset_spec_of,
    fungible_token,
    collateral_item,
    collateral_item_symbol,
    wad,
    from_wad,
    mul_div,
    WAD,
    SECONDS_PER_YEAR,
    SYSTEM_WALLET,
    UNIT_TYPE_FUNGIBLE,
    UNIT_TYPE_COLLATERAL_ITEM,
    UNIT_TYPE_LENDING_POOL,
    ROLE_ADMIN,
    ROLE_USER,
)

# Exceptions
from .core import (
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    TransferFailed,
    OracleError,
    LendingError,
    ValidationError,
    ZeroAmount,
    NotFound,
    InsufficientShares,
    BelowMinimum,
    SolvencyError,
    InsufficientLiquidity,
    MaxUtilizationExceeded,
    PositionUnhealthy,
    NotLiquidatable,
    ConfigurationError,
    AccessError,
    Unauthorized,
    PoolPaused,
    ReentrantCall,
)

# Ledger
from .ledger import Ledger

# Collaborator gateways
from .oracle import OracleGateway, StaticPriceOracle, TimeSeriesPriceOracle
from .access import AccessController, StaticAccessController

# Interest rate model
from .interest import (
    InterestRateModel,
    calculate_utilization,
    calculate_borrow_rate,
    calculate_supply_rate,
    calculate_interest,
    calculate_pool_interest,
    rate_curve,
)

# Pool state
from .pool_state import (
    PoolTerms,
    PoolState,
    UserPosition,
    load_pool,
    to_state_dict,
    create_lending_pool,
    custodian_wallet,
    convert_to_shares,
    convert_to_assets,
    user_debt,
    user_supply,
    calculate_accrual,
)

# Risk engine
from .risk import (
    RiskParameters,
    RiskAssessment,
    LiquidationCheck,
    RiskEngine,
    normalize_value,
    calculate_debt_value,
    calculate_collateral_value,
    calculate_assessment,
)

# Pool operations
from .pool import (
    calculate_liquidation_split,
    compute_accrue_interest,
    compute_supply_collateral,
    compute_withdraw_collateral,
    compute_supply_liquidity,
    compute_withdraw_liquidity,
    compute_borrow,
    compute_repay,
    compute_liquidation,
    compute_set_loan_to_value,
    compute_set_min_supply_amount,
)

# Pool service
from .lending_pool import LendingPool, LiquidationResult


__all__ = [
    # Core
    'LedgerView',
    'Move',
    'Transaction',
    'PendingTransaction',
    'TransactionOrigin',
    'OriginType',
    'build_transaction',
    'empty_pending_transaction',
    'Unit',
    'UnitStateChange',
    'ExecuteResult',
    'AssetKind',
    'AssetSpec',
    'fungible_asset',
    'non_fungible_asset',
    'asset_spec_of',
    'fungible_token',
    'collateral_item',
    'collateral_item_symbol',
    'wad',
    'from_wad',
    'mul_div',
    'WAD',
    'SECONDS_PER_YEAR',
    'SYSTEM_WALLET',
    'UNIT_TYPE_FUNGIBLE',
    'UNIT_TYPE_COLLATERAL_ITEM',
    'UNIT_TYPE_LENDING_POOL',
    'ROLE_ADMIN',
    'ROLE_USER',
    # Exceptions
    'LedgerError',
    'UnitNotRegistered',
    'WalletNotRegistered',
    'TransferFailed',
    'OracleError',
    'LendingError',
    'ValidationError',
    'ZeroAmount',
    'NotFound',
    'InsufficientShares',
    'BelowMinimum',
    'SolvencyError',
    'InsufficientLiquidity',
    'MaxUtilizationExceeded',
    'PositionUnhealthy',
    'NotLiquidatable',
    'ConfigurationError',
    'AccessError',
    'Unauthorized',
    'PoolPaused',
    'ReentrantCall',
    # Ledger
    'Ledger',
    # Gateways
    'OracleGateway',
    'StaticPriceOracle',
    'TimeSeriesPriceOracle',
    'AccessController',
    'StaticAccessController',
    # Interest
    'InterestRateModel',
    'calculate_utilization',
    'calculate_borrow_rate',
    'calculate_supply_rate',
    'calculate_interest',
    'calculate_pool_interest',
    'rate_curve',
    # Pool state
    'PoolTerms',
    'PoolState',
    'UserPosition',
    'load_pool',
    'to_state_dict',
    'create_lending_pool',
    'custodian_wallet',
    'convert_to_shares',
    'convert_to_assets',
    'user_debt',
    'user_supply',
    # Risk
    'RiskParameters',
    'RiskAssessment',
    'LiquidationCheck',
    'RiskEngine',
    'normalize_value',
    'calculate_debt_value',
    'calculate_collateral_value',
    'calculate_assessment',
    # Pool operations
    'calculate_accrual',
    'calculate_liquidation_split',
    'compute_accrue_interest',
    'compute_supply_collateral',
    'compute_withdraw_collateral',
    'compute_supply_liquidity',
    'compute_withdraw_liquidity',
    'compute_borrow',
    'compute_repay',
    'compute_liquidation',
    'compute_set_loan_to_value',
    'compute_set_min_supply_amount',
    # Pool service
    'LendingPool',
    'LiquidationResult',
]

__version__ = '1.0.0'
