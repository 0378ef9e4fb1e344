"""Exceptions raised by the inventory KPI engine."""


class KpiEngineError(Exception):
    """Base class for KPI engine failures."""


class InvalidRunRequest(KpiEngineError):
    """The invocation is missing a tenant or carries an unparseable tenant/date."""


class SnapshotLockError(KpiEngineError):
    """Another run holds the (tenant, as_of_date) lock."""

    def __init__(self, tenant_id: str, as_of_date: str):
        self.tenant_id = tenant_id
        self.as_of_date = as_of_date
        super().__init__(f"KPI run already in progress for tenant {tenant_id} on {as_of_date}")


class KpiRunFailed(KpiEngineError):
    """A run ended in an unexpected error and should be retried by the caller."""

    def __init__(self, tenant_id: str, errors: list[str]):
        self.tenant_id = tenant_id
        self.errors = errors
        super().__init__(f"KPI run failed for tenant {tenant_id}: {'; '.join(errors)}")
