from typing import List, Optional

from pydantic import BaseModel


class HistoryItem(BaseModel):
    role: str
    content: str
    timestamp: str


class ConversationResponse(BaseModel):
    user_id: str
    conversation_id: Optional[str] = None
    history: List[HistoryItem] = []
