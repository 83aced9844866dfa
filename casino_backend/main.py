from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .errors import NetworkError
from .service import EntropyBackendService


# ---------- MODELS ----------

class StatusBody(BaseModel):
    isRunning: bool
    pendingRequests: int
    oldestPendingSeconds: Optional[float] = None
    gamesSeen: int
    requestsFailed: int
    settled: int
    abandoned: int
    correlationMisses: int
    heldFulfillments: int
    expiredFulfillments: int
    treasury: Dict[str, str]
    fulfillmentStrategy: str
    fulfillmentFallback: str
    settlementFailurePolicy: str


class PendingBody(BaseModel):
    requestId: str
    originTxHash: str
    user: str
    gameType: int
    gameTypeName: str
    betAmount: str  # wei, as string: uint256 doesn't fit a JS number
    createdAt: float
    ageSeconds: float
    entropyTxHash: Optional[str] = None
    requestIdSource: str
    state: str


class TreasuryBody(BaseModel):
    address: str
    chainId: int
    balanceWei: str
    balance: str
    entropyFeeFallbackWei: Optional[str] = None


def create_app(service: EntropyBackendService) -> FastAPI:
    """Read-only status surface over a running service. Nothing here mutates state."""
    app = FastAPI(title="Casino Entropy Backend", version="1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # ---------- ENDPOINTS ----------

    @app.get("/")
    def health_check():
        return {"status": "online" if service.is_running else "stopped"}

    @app.get("/status", response_model=StatusBody)
    def get_status():
        return service.get_status()

    @app.get("/pending", response_model=List[PendingBody])
    def get_pending():
        out = []
        for record in service.table.snapshot():
            data = record.to_dict()
            data["ageSeconds"] = round(record.age(), 1)
            out.append(data)
        return out

    @app.get("/treasury", response_model=Dict[str, TreasuryBody])
    async def get_treasury():
        """Live treasury balances on both chains."""
        try:
            return await service.treasury_balances()
        except NetworkError as e:
            raise HTTPException(status_code=502, detail=str(e))

    return app
