from fastapi import APIRouter, Depends, Header, HTTPException
from loguru import logger

from app.deps import aliases, conversation, directory, dispatcher, ledger, members, settings
from app.errors import InvalidAdminRequest, StoreError
from app.models.schemas import (
    ActionLog,
    AliasEntry,
    Balance,
    ChatMessage,
    Debt,
    Member,
    MergeRequest,
    SeedAliasRequest,
    TurnRequest,
    TurnResponse,
)
from app.services.ledger import summarize_balances
from app.services.pacing import RecordingTransport


def require_admin(x_admin_token: str | None = Header(default=None)):
    if settings.admin_token and x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/chats/{chat_id}/members", response_model=list[Member])
def list_members(chat_id: str, include_tombstones: bool = False):
    return members.get_all(chat_id, include_tombstones=include_tombstones)


@router.get("/chats/{chat_id}/aliases", response_model=list[AliasEntry])
def list_aliases(chat_id: str, member_id: str | None = None):
    if member_id:
        return aliases.list_for_member(chat_id, member_id)
    return aliases.get_all(chat_id)


@router.post("/chats/{chat_id}/aliases", response_model=AliasEntry)
def seed_alias(chat_id: str, request: SeedAliasRequest):
    try:
        return directory.seed_alias(chat_id, request.alias_text, request.member_id, request.confidence)
    except InvalidAdminRequest as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/chats/{chat_id}/members/merge", response_model=Member)
def merge_members(chat_id: str, request: MergeRequest):
    try:
        merged = directory.merge(chat_id, request.virtual_id, request.real_id)
    except InvalidAdminRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return merged


@router.get("/chats/{chat_id}/debts", response_model=list[Debt])
def list_debts(chat_id: str, settled: bool | None = None):
    return ledger.list_debts(chat_id, settled=settled)


@router.get("/chats/{chat_id}/debts/{debt_id}", response_model=Debt)
def get_debt(chat_id: str, debt_id: int):
    debt = ledger.get_debt(debt_id)
    if debt is None or debt.chat_id != chat_id:
        raise HTTPException(status_code=404, detail="Debt not found")
    return debt


@router.get("/chats/{chat_id}/balances", response_model=list[Balance])
def list_balances(chat_id: str):
    return summarize_balances(members, ledger, chat_id)


@router.get("/chats/{chat_id}/actions", response_model=list[ActionLog])
def list_actions(chat_id: str):
    return ledger.list_actions(chat_id)


@router.get("/chats/{chat_id}/messages", response_model=list[ChatMessage])
def list_messages(chat_id: str, limit: int = 50):
    return conversation.recent(chat_id, limit)


@router.post("/chats/{chat_id}/turns", response_model=TurnResponse)
async def run_turn(chat_id: str, request: TurnRequest):
    """Run one inbound message through the full turn pipeline without Telegram."""
    sender_id = None
    if request.sender_id is not None:
        sender = members.upsert_real(
            chat_id,
            request.sender_id,
            request.sender_name or str(request.sender_id),
            request.sender_username,
        )
        sender_id = sender.member_id

    logger.info("API turn in chat {}: {}", chat_id, request.text)
    transport = RecordingTransport()
    result = await dispatcher.handle_message(chat_id, request.text, sender_id=sender_id, transport=transport)
    return TurnResponse(result=result, fragments=[text for _, text in transport.sent])
