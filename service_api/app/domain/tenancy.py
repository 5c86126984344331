"""
Tenant resolution for incoming requests.
"""

from typing import Optional

from fastapi import Request

from shared.errors import MissingOrganizationError

ORG_HEADER = "x-org-id"
ORG_QUERY_PARAM = "orgId"


class TenancyResolver:
    """Extracts the organization id from the ``x-org-id`` header or ``orgId`` query parameter.

    There is no default tenant: tenant-scoped routes must carry one or be
    rejected, and the resolved id is the mandatory filter key for every
    downstream store.
    """

    def __init__(self, header_name: str = ORG_HEADER, query_param: str = ORG_QUERY_PARAM):
        self.header_name = header_name
        self.query_param = query_param

    def peek(self, request: Request) -> Optional[str]:
        """Return the client-supplied organization id, or None."""
        for candidate in (request.headers.get(self.header_name), request.query_params.get(self.query_param)):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return None

    def resolve(self, request: Request) -> str:
        organization_id = self.peek(request)
        if organization_id is None:
            raise MissingOrganizationError()
        return organization_id
