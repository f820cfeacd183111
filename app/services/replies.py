"""Canned chat fragments the dispatcher adds on top of the oracle's reply."""

FALLBACK_MALFORMED = "ơ e bị rối chút, anh nói lại giúp e được không 😅"
FALLBACK_TIMEOUT = "e đang hơi lag, anh thử nhắn lại xíu nữa nha 🙏"
LEDGER_REJECTED = "e chưa ghi được khoản này, anh kiểm tra lại giúp e nha"


def format_amount(amount: float | None, currency: str) -> str:
    if amount is None:
        return "hết"
    if amount == int(amount):
        return f"{int(amount):,} {currency}"
    return f"{amount:,.2f} {currency}"


def clarifying_question(reference: str, names: list[str]) -> str:
    options = "\n".join(f"{i}. {name}" for i, name in enumerate(names, 1))
    return f'"{reference}" là ai vậy anh?\n{options}\nanh trả lời số hoặc tên giúp e nha'


def virtual_member_created(name: str) -> str:
    return (
        f"e chưa biết {name} trong nhóm, tạm ghi {name} là thành viên mới nha. "
        f"Khi {name} vào nhóm thì admin gộp lại giúp e"
    )


def unresolved_reference(reference: str) -> str:
    return f'e không tìm thấy "{reference}" trong nhóm nên bỏ qua khoản đó nha'


def ambiguity_expired(reference: str) -> str:
    return f'câu hỏi "{reference}" lúc nãy e bỏ qua rồi, anh nhắn lại khoản đó giúp e nha'


def ambiguity_confirmed(reference: str, name: str) -> str:
    return f'ok, từ giờ "{reference}" là {name} nha'


def mutation_summary(kind: str, creditor: str, debtor: str, amount: float | None, currency: str) -> str:
    if kind == "debt":
        return f"đã ghi: {debtor} nợ {creditor} {format_amount(amount, currency)}"
    if kind == "payment":
        return f"đã ghi: {debtor} trả {creditor} {format_amount(amount, currency)}"
    return f"đã ghi: {debtor} trả {format_amount(amount, currency)} cho {creditor}"


def nothing_to_settle(creditor: str, debtor: str) -> str:
    return f"{debtor} đâu còn nợ {creditor} khoản nào, e không ghi gì thêm nha"
