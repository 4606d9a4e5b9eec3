from sqlalchemy import Column, String, Integer, Float, Date, DateTime, UniqueConstraint, Index
from datetime import datetime
from navhub.db.database import Base

# Named lookback periods persisted in fund_returns; keep in sync with
# navhub.services.nav_service.returns.PERIODS.
RETURN_PERIOD_KEYS = ("1w", "1m", "3m", "6m", "1y", "2y", "3y", "5y", "7y", "10y", "since_inception")
CAGR_PERIOD_KEYS = ("1y", "2y", "3y", "5y", "7y", "10y", "since_inception")


class NavHistory(Base):
    """Daily NAV quotes, one row per scheme per date."""
    __tablename__ = "nav_history"

    id = Column(Integer, primary_key=True)
    scheme_code = Column(String(20), nullable=False)
    nav_date = Column(Date, nullable=False)
    nav_value = Column(Float, nullable=False)
    # Bumped on every value correction; 0 means the row was only ever inserted
    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('scheme_code', 'nav_date', name='uq_nav_history_scheme_date'),
        Index('ix_nav_history_scheme_date', 'scheme_code', 'nav_date'),
    )


class Fund(Base):
    """Scheme metadata plus the latest-NAV projection."""
    __tablename__ = "funds"

    scheme_code = Column(String(20), primary_key=True)
    scheme_name = Column(String(500), nullable=True)
    amc_name = Column(String(255), nullable=True)
    category = Column(String(255), nullable=True)
    latest_nav = Column(Float, nullable=True)
    latest_nav_date = Column(Date, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FundReturns(Base):
    """Latest returns snapshot per scheme, fully overwritten on recomputation."""
    __tablename__ = "fund_returns"

    scheme_code = Column(String(20), primary_key=True)
    as_of_date = Column(Date, nullable=True)
    latest_nav = Column(Float, nullable=True)

    return_1w = Column(Float, nullable=True)
    return_1m = Column(Float, nullable=True)
    return_3m = Column(Float, nullable=True)
    return_6m = Column(Float, nullable=True)
    return_1y = Column(Float, nullable=True)
    return_2y = Column(Float, nullable=True)
    return_3y = Column(Float, nullable=True)
    return_5y = Column(Float, nullable=True)
    return_7y = Column(Float, nullable=True)
    return_10y = Column(Float, nullable=True)
    return_since_inception = Column(Float, nullable=True)

    cagr_1y = Column(Float, nullable=True)
    cagr_2y = Column(Float, nullable=True)
    cagr_3y = Column(Float, nullable=True)
    cagr_5y = Column(Float, nullable=True)
    cagr_7y = Column(Float, nullable=True)
    cagr_10y = Column(Float, nullable=True)
    cagr_since_inception = Column(Float, nullable=True)

    data_quality_issues = Column(Integer, nullable=False, default=0)
    calculated_at = Column(DateTime, default=datetime.utcnow)
