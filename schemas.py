from pydantic import BaseModel, Field
from typing import List, Optional, Any, Dict
from datetime import datetime
from enum import Enum


class UserRole(int, Enum):
    FARMER = 0
    DISTRIBUTOR = 1
    RETAILER = 2
    CONSUMER = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


class BatchStatus(int, Enum):
    HARVESTED = 0
    IN_TRANSIT = 1
    AT_DISTRIBUTOR = 2
    AT_RETAILER = 3
    SOLD = 4  # Final stage

    @property
    def label(self) -> str:
        return {
            BatchStatus.HARVESTED: "Harvested",
            BatchStatus.IN_TRANSIT: "In Transit",
            BatchStatus.AT_DISTRIBUTOR: "At Distributor",
            BatchStatus.AT_RETAILER: "At Retailer",
            BatchStatus.SOLD: "Sold",
        }[self]


class HandoffEventType(str, Enum):
    HARVEST = "Harvest"
    PICKUP = "Pickup"
    TRANSIT = "Transit"
    DELIVERY = "Delivery"
    SALE = "Sale"


class LedgerMirrorStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Authentication Models
class RegisterRequest(BaseModel):
    phone: str = Field(..., min_length=5, max_length=20)
    name: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    role: UserRole
    password: str = Field(..., min_length=6)
    gpsCoordinates: Optional[str] = None


class LoginRequest(BaseModel):
    phone: str
    password: str


class UserInfo(BaseModel):
    id: int
    phone: str
    name: str
    location: str
    role: UserRole
    roleLabel: str
    walletAddress: str
    isVerified: bool
    createdAt: Optional[datetime] = None


class LedgerStatus(BaseModel):
    action: str
    status: LedgerMirrorStatus
    transactionHash: Optional[str] = None
    explorerUrl: Optional[str] = None
    error: Optional[str] = None


class RegisterResponse(BaseModel):
    success: bool = True
    message: str
    token: str
    user: UserInfo
    ledger: List[LedgerStatus] = Field(default_factory=list)


class LoginResponse(BaseModel):
    success: bool
    token: str
    user: UserInfo
    message: str


class VerifyUserResponse(BaseModel):
    success: bool = True
    message: str
    user: UserInfo
    ledger: Optional[LedgerStatus] = None


# Batch Models
class CreateBatchRequest(BaseModel):
    produce: str = Field(..., min_length=1, description="Type of produce, e.g. Tomato")
    variety: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0, description="Quantity in kg")
    price: float = Field(..., ge=0, description="Price per kg")
    qualityGrade: str = Field(..., min_length=1)
    isOrganic: bool = False
    farmLocation: str = Field(..., min_length=1)
    gpsCoordinates: Optional[str] = None
    photoUrl: Optional[str] = None
    metadataUrl: Optional[str] = None
    password: Optional[str] = Field(None, description="Unlocks the custodial wallet to register the batch on-chain")


class BatchResponse(BaseModel):
    id: int
    batchNumber: str
    produce: str
    variety: str
    quantity: float
    price: float
    qualityGrade: str
    isOrganic: bool
    farmLocation: str
    gpsCoordinates: Optional[str] = None
    status: BatchStatus
    statusLabel: str
    isFinalStage: bool
    producerId: int
    producerName: Optional[str] = None
    currentHolderId: int
    currentHolderName: Optional[str] = None
    harvestDate: datetime
    createdAt: datetime
    photoUrl: Optional[str] = None
    metadataUrl: Optional[str] = None
    qrCode: Optional[str] = None
    blockchainId: Optional[int] = None
    registrationTxHash: Optional[str] = None
    parentBatchId: Optional[int] = None


class HandoffEventResponse(BaseModel):
    id: int
    batchId: int
    fromUserId: Optional[int] = None
    fromUserName: Optional[str] = None
    toUserId: int
    toUserName: Optional[str] = None
    eventType: HandoffEventType
    status: BatchStatus
    quantity: float
    price: float
    location: str
    gpsCoordinates: Optional[str] = None
    temperature: Optional[str] = None
    notes: Optional[str] = None
    scanLocation: Optional[str] = None
    photoUrl: Optional[str] = None
    documentUrl: Optional[str] = None
    transactionHash: Optional[str] = None
    createdAt: datetime


class BatchDetailResponse(BatchResponse):
    history: List[HandoffEventResponse] = Field(default_factory=list)


class CreateBatchResponse(BaseModel):
    success: bool = True
    message: str
    batch: BatchResponse
    ledger: Optional[LedgerStatus] = None


class TransferRequest(BaseModel):
    toPhone: str = Field(..., description="Phone number of the receiving stakeholder")
    quantity: Optional[float] = Field(None, gt=0, description="Defaults to the whole batch")
    price: float = Field(..., ge=0)
    location: str = Field(..., min_length=1)
    password: Optional[str] = Field(None, description="Unlocks the custodial wallet to mirror the transfer on-chain")
    gpsCoordinates: Optional[str] = None
    temperature: Optional[str] = None
    notes: Optional[str] = None
    scanLocation: Optional[str] = None
    photoUrl: Optional[str] = None
    documentUrl: Optional[str] = None


class PurchaseRequest(BaseModel):
    price: float = Field(..., ge=0)
    location: str = Field(..., min_length=1)
    quantity: Optional[float] = Field(None, gt=0)
    qrPayload: Optional[str] = Field(None, description="Raw payload read from the batch QR code")
    gpsCoordinates: Optional[str] = None
    temperature: Optional[str] = None
    notes: Optional[str] = None
    scanLocation: Optional[str] = None
    photoUrl: Optional[str] = None


class HandoffResponse(BaseModel):
    success: bool = True
    message: str
    event: HandoffEventResponse
    batch: BatchResponse
    remainder: Optional[BatchResponse] = None
    ledger: LedgerStatus


class QRCodeResponse(BaseModel):
    batchId: int
    payload: str
    qrImageBase64: str
    dataUrl: str


# Response Models
class SuccessResponse(BaseModel):
    success: bool = True
    message: str
    transactionHash: Optional[str] = None


# Error Response
class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[str] = None


class LedgerStatsResponse(BaseModel):
    database: Dict[str, int]
    blockchain: Dict[str, Any]
    verificationPercentage: Dict[str, int]
