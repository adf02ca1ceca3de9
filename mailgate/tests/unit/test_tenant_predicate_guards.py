from __future__ import annotations

import pytest

from mailgate.domain.models import Batch
from mailgate.persistence.guards import TenantPredicateError, tenant_predicate
from mailgate.persistence.repos import batches as batches_repo


def test_tenant_predicate_requires_tenant() -> None:
    with pytest.raises(TenantPredicateError):
        tenant_predicate(Batch, "")


@pytest.mark.asyncio
async def test_scoped_reads_refuse_missing_tenant(session) -> None:
    with pytest.raises(TenantPredicateError):
        await batches_repo.get_batch(session, "", "batch-1")
