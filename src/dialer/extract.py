"""
Order extraction from conversation text.

Heuristic pattern matching over the assistant's confirmations and the
customer's utterances. The agent is prompted to confirm every line as
"I'll add <quantity> cases of <product> at $<price> per case", so a regex
is enough to recover the order. This is approximate by nature: there is no
grammar, phrasing outside the patterns is ignored.
"""

import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import structlog

from src.dialer.session import OrderLineItem, OrderState, SessionFlags

logger = structlog.get_logger(__name__)

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16,
    "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20,
}

_QUANTITY = r"\d+|" + "|".join(sorted(_NUMBER_WORDS, key=len, reverse=True))

_LINE_ITEM_RE = re.compile(
    rf"\b(?P<quantity>{_QUANTITY})\s+cases?\s+of\s+"
    r"(?P<product>(?:(?!\bcases?\s+of\b)[^!?;\n]){1,80}?)"
    r"\s+at\s+\$\s?(?P<price>\d[\d,]*(?:\.\d{1,2})?)",
    re.IGNORECASE,
)

_PARENTHETICAL_RE = re.compile(r"\s*\([^)]*\)")
_LEADING_ARTICLE_RE = re.compile(r"^(?:the|your|our|some)\s+", re.IGNORECASE)

_CUSTOMER_NAME_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i:\b(?:this is|my name is|speaking is|you're speaking with))\s+(?P<name>[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"),
    re.compile(r"(?i:\bspeaking with the manager,?)\s+(?P<name>[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"),
)

_HOTEL_NAME_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?P<name>(?:[A-Z][\w'&-]*\s+){1,4}(?:Hotel|Inn|Suites|Resort|Lodge|Motel))\b"),
    re.compile(r"(?i:\b(?:from|at|with) the)\s+(?P<name>(?:[A-Z][\w'&-]*\s*){1,4})(?i:\s+(?:hotel|inn|suites|resort|lodge|motel))"),
)

_RECOMMENDATION_RE = re.compile(
    r"\b(?:also (?:try|trying|consider|add|go for)|recommend(?:ing)?|you might (?:also )?like)\s+"
    r"(?:our\s+|the\s+|some\s+)?(?P<product>[a-z][a-z0-9 '-]{2,40}?)"
    r"(?=\s*(?:[,.!?(]|\bat\b|\bfor\b|\bwhich\b|\bthat\b|$))",
    re.IGNORECASE,
)

# "We recommend a minimum of 3 cases" is an order size, not a product
_NOT_A_PRODUCT_RE = re.compile(
    r"^(?:\d|(?:an?\s+)?(?:minimum|maximum|min|max)\b|at\s+(?:least|most)\b|up\s+to\b|no\s+(?:more|less)\b"
    r"|(?:" + "|".join(w for w in _NUMBER_WORDS if w not in ("a", "an")) + r")\b)"
    r"|\bcases?\b",
    re.IGNORECASE,
)

_YES_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"(^|\b)(yes|yeah|yep|correct|thats right|that's right|sure|absolutely|sounds good|go ahead)(\b|$)",
    )
)

_DONE_ORDER_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\b(thats all|that's all|thats it|that's it|nothing else|im done|i'm done|that will be all|that'll be all)(\b|$)",
        r"\b(no more|that's everything|thats everything)(\b|$)",
    )
)

_REORDER_QUESTION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\b(reorder|re-order|same as last time|same order|your usual|last order)\b",
    )
)

_REORDER_REQUEST_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\b(reorder|re-order|same as last time|same order as last|the usual)\b",
    )
)

_UPSELL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\b(would you also like|would you like to add|also try|also consider|recommend|might also|popular with|special offer|on special)\b",
    )
)


def _normalize_for_intent(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("\u2019", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", text)


def _matches_any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    t = _normalize_for_intent(text)
    if not t:
        return False
    return any(p.search(t) for p in patterns)


def _parse_quantity(raw: str) -> Optional[int]:
    raw = raw.strip().lower()
    if raw.isdigit():
        return int(raw)
    return _NUMBER_WORDS.get(raw)


def _clean_product(raw: str) -> str:
    product = _PARENTHETICAL_RE.sub("", raw)
    product = _LEADING_ARTICLE_RE.sub("", product.strip())
    return product.strip(" ,.:-\"'")


class OrderExtractor:
    """
    Applies order patterns to conversation text and updates an OrderState.
    """

    def extract_line_items(self, text: str) -> List[OrderLineItem]:
        """
        Find every "<quantity> case(s) of <product> at $<price>" in `text`.

        Args:
            text: Assistant reply

        Returns:
            Line items in order of appearance (invalid matches skipped)
        """
        items: List[OrderLineItem] = []
        for match in _LINE_ITEM_RE.finditer(text or ""):
            quantity = _parse_quantity(match.group("quantity"))
            product = _clean_product(match.group("product"))
            try:
                price = Decimal(match.group("price").replace(",", ""))
                items.append(OrderLineItem(product=product, quantity=quantity, price_per_case=price))
            except (InvalidOperation, ValueError, TypeError) as e:
                logger.debug("Skipping unparseable order line", match=match.group(0), error=str(e))
        return items

    def apply_assistant_reply(self, order: OrderState, reply: str) -> List[OrderLineItem]:
        """
        Append confirmed line items from an assistant reply to the order.

        A line identical to one already on the order is not added again;
        recap sentences repeat earlier confirmations word for word.

        Returns:
            The line items that were appended
        """
        added: List[OrderLineItem] = []
        for item in self.extract_line_items(reply):
            if self._already_ordered(order, item):
                continue
            order.products.append(item)
            added.append(item)

        for match in _RECOMMENDATION_RE.finditer(reply or ""):
            product = _clean_product(match.group("product"))
            if product and not _NOT_A_PRODUCT_RE.search(product):
                order.add_recommendation(product)

        if added:
            logger.info(
                "Order updated",
                items=[f"{i.quantity} x {i.product} @ {i.price_per_case}" for i in added],
                order_total=str(order.total),
            )
        return added

    def apply_user_utterance(self, order: OrderState, utterance: str) -> None:
        """Pick up the customer's and hotel's names when first mentioned."""
        if not order.customer_name:
            name = self._first_match(_CUSTOMER_NAME_RES, utterance)
            if name:
                order.customer_name = name
        if not order.hotel_name:
            hotel = self._first_match(_HOTEL_NAME_RES, utterance)
            if hotel:
                order.hotel_name = hotel

    def update_flags(
        self,
        flags: SessionFlags,
        user_text: str,
        reply: str,
        previous_reply: str = "",
    ) -> None:
        """
        Advance the advisory conversation flags. Flags only ever turn on.

        Args:
            flags: Session flags to update
            user_text: The customer's utterance this turn
            reply: The assistant's reply this turn
            previous_reply: The assistant's reply the customer was answering
        """
        if not flags.reorder_confirmed:
            asked = _matches_any(_REORDER_QUESTION_PATTERNS, previous_reply)
            if (asked and _matches_any(_YES_PATTERNS, user_text)) or _matches_any(
                _REORDER_REQUEST_PATTERNS, user_text
            ):
                flags.reorder_confirmed = True

        if not flags.upsell_attempted and _matches_any(_UPSELL_PATTERNS, reply):
            flags.upsell_attempted = True

        if not flags.customer_done and _matches_any(_DONE_ORDER_PATTERNS, user_text):
            flags.customer_done = True

    @staticmethod
    def _already_ordered(order: OrderState, item: OrderLineItem) -> bool:
        key = (item.product.casefold(), item.quantity, item.price_per_case)
        return any(
            (existing.product.casefold(), existing.quantity, existing.price_per_case) == key
            for existing in order.products
        )

    @staticmethod
    def _first_match(patterns: tuple[re.Pattern[str], ...], text: str) -> str:
        for pattern in patterns:
            match = pattern.search(text or "")
            if match:
                return match.group("name").strip(" ,.")
        return ""
