from fastapi import APIRouter, Depends

from khopay.deps import OPERATOR_ROLES, require_roles
from khopay.psp.dispatcher import PSPDispatcher

router = APIRouter(prefix="/v1/gateways", tags=["Gateways"])


@router.get("/status", dependencies=[Depends(require_roles(OPERATOR_ROLES))])
def gateway_status():
    """
    Which gateways have credentials configured.
    A missing credential is fatal for that provider until fixed.
    """
    return {
        "gateways": {
            provider: {"configured": configured}
            for provider, configured in PSPDispatcher.status().items()
        }
    }
