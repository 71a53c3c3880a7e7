from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Tuple

from hive_signer.keys import PUBLIC_KEY_PATTERN, validate_account_name


class Authority(BaseModel):
    weight_threshold: int = Field(default=1, gt=0)
    account_auths: List[Tuple[str, int]] = Field(default_factory=list)
    key_auths: List[Tuple[str, int]]


class PrivateKeys(BaseModel):
    owner: str
    active: str
    posting: str
    memo: str


class PrepareAccountRequest(BaseModel):
    new_account_name: str
    creator_account: Optional[str] = None

    @field_validator("new_account_name")
    @classmethod
    def check_name(cls, value: str) -> str:
        # InvalidInputError is a ValueError, so pydantic reports it per field
        return validate_account_name(value)


class CreateClaimedAccountRequest(BaseModel):
    new_account_name: str
    owner: Authority
    active: Authority
    posting: Authority
    memo_key: str = Field(pattern=PUBLIC_KEY_PATTERN.pattern)
    json_metadata: str = "{}"
    # session mode
    session_id: Optional[str] = Field(default=None, max_length=64)
    confirmed: bool = False
    master_password: Optional[str] = None
    # direct mode escrow
    private_keys: Optional[PrivateKeys] = None

    @field_validator("new_account_name")
    @classmethod
    def check_name(cls, value: str) -> str:
        return validate_account_name(value)

    def session_mode(self) -> bool:
        return bool(self.session_id) and self.confirmed


class MarkDeliveredRequest(BaseModel):
    transaction_id: str = Field(min_length=1, max_length=128)
