from loguru import logger

from app.db.repository import AliasRepository, LedgerRepository, MemberRepository
from app.db.store import Store
from app.errors import InvalidAdminRequest, StoreError
from app.models.schemas import Member


class MemberDirectory:
    """Per-chat registry of real and virtual members.

    ``merge`` is an administrative operation; callers are expected to have
    done their own authorization check.
    """

    def __init__(
        self,
        store: Store,
        members: MemberRepository,
        aliases: AliasRepository,
        ledger: LedgerRepository,
    ):
        self.store = store
        self.members = members
        self.aliases = aliases
        self.ledger = ledger

    def get_or_create_virtual(self, chat_id: str, display_name: str) -> str:
        return self.members.get_or_create_virtual(chat_id, display_name)

    def seed_alias(self, chat_id: str, alias_text: str, member_id: str, confidence: float = 1.0):
        if self.members.get_live(chat_id, member_id) is None:
            raise InvalidAdminRequest(f"Unknown member {member_id}")
        try:
            entry = self.aliases.upsert(chat_id, alias_text, member_id, confidence, source="seeded")
        except Exception as e:
            logger.error("Alias seed failed in chat {}: {}", chat_id, e)
            raise StoreError("alias seed failed") from e
        logger.info("Seeded alias '{}' -> {} in chat {}", entry.alias_text, member_id, chat_id)
        return entry

    def merge(self, chat_id: str, virtual_id: str, real_id: str) -> Member:
        """Fold a virtual member into a real one.

        Ledger rows and aliases are repointed in one transaction; the virtual
        member stays behind as a tombstone.
        """
        if virtual_id == real_id:
            raise InvalidAdminRequest("Cannot merge a member into itself")

        virtual = self.members.get(chat_id, virtual_id)
        if virtual is None:
            raise InvalidAdminRequest(f"Unknown member {virtual_id}")
        if not virtual.is_virtual:
            raise InvalidAdminRequest(f"{virtual_id} is not a virtual member")
        if not virtual.is_live:
            raise InvalidAdminRequest(f"{virtual_id} was already merged into {virtual.merged_into}")

        real = self.members.get_live(chat_id, real_id)
        if real is None:
            raise InvalidAdminRequest(f"Unknown member {real_id}")
        if real.is_virtual:
            raise InvalidAdminRequest(f"{real_id} is not a real member")

        try:
            with self.store.transaction():
                rows = self.ledger.repoint(chat_id, virtual_id, real_id)
                aliases = self.aliases.repoint(chat_id, virtual_id, real_id)
                self.members.mark_merged(chat_id, virtual_id, real_id)
        except Exception as e:
            logger.error("Merge {} -> {} failed in chat {}: {}", virtual_id, real_id, chat_id, e)
            raise StoreError("merge failed") from e

        logger.info(
            "Merged {} into {} in chat {} ({} ledger fields, {} aliases)",
            virtual_id,
            real_id,
            chat_id,
            rows,
            aliases,
        )
        return real
