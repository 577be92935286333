from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict


# draft -> scheduled -> completed | deleted
ItemStatus = Literal["draft", "scheduled", "completed", "deleted"]

class BaseActionItem(BaseModel):
    # Optional for create (store assigns it), required for every later transition
    item_id: Optional[str] = None

    user_id: str
    item_type: Literal["reminder"] = "reminder"  # discriminator kept on stored documents

    title: str = ""
    description: Optional[str] = None

    status: ItemStatus = "draft"

    # Idempotency key: a retried create with the same (user_id, op_id) returns the first id
    op_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore", frozen=True)
