"""
Tests for order, name and flag extraction.
"""

from decimal import Decimal

import pytest

from src.dialer.extract import OrderExtractor
from src.dialer.session import OrderState, SessionFlags


@pytest.fixture
def extractor():
    return OrderExtractor()


class TestLineItems:

    def test_two_confirmations_accumulate(self, extractor):
        order = OrderState()

        extractor.apply_assistant_reply(order, "I'll add 2 cases of Banana Muffins at $25 to your order.")
        extractor.apply_assistant_reply(order, "I'll add 1 case of Chocolate Muffins at $27.")

        assert len(order.products) == 2
        assert order.total == Decimal("77")
        assert order.products[0].product == "Banana Muffins"
        assert order.products[0].quantity == 2
        assert order.products[1].price_per_case == Decimal("27")

    def test_number_words(self, extractor):
        items = extractor.extract_line_items("That's three cases of Orange Juice at $18.50 per case.")

        assert len(items) == 1
        assert items[0].quantity == 3
        assert items[0].price_per_case == Decimal("18.50")

    def test_article_quantity(self, extractor):
        items = extractor.extract_line_items("I'll add a case of Coffee Beans at $40.")

        assert items[0].quantity == 1
        assert items[0].product == "Coffee Beans"

    def test_parenthetical_is_dropped(self, extractor):
        items = extractor.extract_line_items("I'll add 3 cases of Spring Water (24-pack) at $15.")

        assert items[0].product == "Spring Water"

    def test_leading_article_is_dropped(self, extractor):
        items = extractor.extract_line_items("I'll add 4 cases of the Bottled Water at $12.")

        assert items[0].product == "Bottled Water"

    def test_thousands_separator_in_price(self, extractor):
        items = extractor.extract_line_items("I'll add 2 cases of Champagne at $1,200.")

        assert items[0].price_per_case == Decimal("1200")

    def test_multiple_items_in_one_reply(self, extractor):
        reply = "So that's 2 cases of Banana Muffins at $25 and 5 cases of bottled water at $12."

        items = extractor.extract_line_items(reply)

        assert [(i.product, i.quantity) for i in items] == [("Banana Muffins", 2), ("bottled water", 5)]

    def test_missing_price_is_ignored(self, extractor):
        assert extractor.extract_line_items("How many cases of water would you like?") == []
        assert extractor.extract_line_items("I'll add 5 cases of water.") == []

    def test_zero_quantity_is_skipped(self, extractor):
        assert extractor.extract_line_items("I'll add 0 cases of water at $12.") == []

    def test_exact_repeat_is_not_added_twice(self, extractor):
        order = OrderState()
        reply = "I'll add 5 cases of bottled water at $12 per case."

        first = extractor.apply_assistant_reply(order, reply)
        second = extractor.apply_assistant_reply(order, "Just to confirm, 5 cases of Bottled Water at $12.")

        assert len(first) == 1
        assert second == []
        assert len(order.products) == 1

    def test_different_quantity_is_a_new_line(self, extractor):
        order = OrderState()
        extractor.apply_assistant_reply(order, "I'll add 5 cases of water at $12.")
        extractor.apply_assistant_reply(order, "I'll add 2 cases of water at $12.")

        assert len(order.products) == 2
        assert order.total == Decimal("84")

    def test_identical_repeat_order_counts_once(self, extractor):
        # A second identical confirmation reads as a recap, even when the
        # customer really asked for the same amount again.
        order = OrderState()
        extractor.apply_assistant_reply(order, "I'll add 2 cases of sparkling water at $25 per case.")

        added = extractor.apply_assistant_reply(order, "Sure, I'll add 2 cases of sparkling water at $25 per case.")

        assert added == []
        assert [(i.product, i.quantity) for i in order.products] == [("sparkling water", 2)]
        assert order.total == Decimal("50")

    def test_empty_reply(self, extractor):
        order = OrderState()
        assert extractor.apply_assistant_reply(order, "") == []
        assert order.products == []


class TestRecommendations:

    def test_recommendation_is_recorded(self, extractor):
        order = OrderState()
        extractor.apply_assistant_reply(order, "I'd also recommend our Blueberry Muffins, which are popular.")

        assert list(order.recommended_products) == ["Blueberry Muffins"]

    def test_minimum_order_quote_is_not_a_recommendation(self, extractor):
        order = OrderState()
        reply = (
            "Perfect! How many cases of bottled water (16.9 fl oz) would you like? "
            "We recommend a minimum of 3 cases at $20 per case."
        )

        extractor.apply_assistant_reply(order, reply)

        assert list(order.recommended_products) == []

    def test_quantity_phrases_do_not_push_out_products(self, extractor):
        order = OrderState()
        extractor.apply_assistant_reply(order, "I'd also recommend our Blueberry Muffins, which are popular.")
        for _ in range(3):
            extractor.apply_assistant_reply(order, "We recommend at least 2 cases at $15 per case.")

        assert list(order.recommended_products) == ["Blueberry Muffins"]


class TestNames:

    def test_customer_and_hotel_names(self, extractor):
        order = OrderState()
        extractor.apply_user_utterance(order, "This is John Smith from the Grand Plaza Hotel.")

        assert order.customer_name == "John Smith"
        assert order.hotel_name == "Grand Plaza Hotel"

    def test_my_name_is(self, extractor):
        order = OrderState()
        extractor.apply_user_utterance(order, "hi, my name is Maria")

        assert order.customer_name == "Maria"

    def test_names_are_not_overwritten(self, extractor):
        order = OrderState(customer_name="John")
        extractor.apply_user_utterance(order, "My name is Mike")

        assert order.customer_name == "John"

    def test_no_names_in_plain_utterance(self, extractor):
        order = OrderState()
        extractor.apply_user_utterance(order, "we need some water")

        assert order.customer_name == ""
        assert order.hotel_name == ""


class TestFlags:

    def test_reorder_confirmed_after_question(self, extractor):
        flags = SessionFlags()
        extractor.update_flags(
            flags,
            user_text="Yes please",
            reply="Great, I'll set that up.",
            previous_reply="Would you like to reorder the same as last time?",
        )

        assert flags.reorder_confirmed

    def test_yes_without_question_is_not_reorder(self, extractor):
        flags = SessionFlags()
        extractor.update_flags(flags, user_text="Yes", reply="Okay.", previous_reply="Is this the manager?")

        assert not flags.reorder_confirmed

    def test_explicit_reorder_request(self, extractor):
        flags = SessionFlags()
        extractor.update_flags(flags, user_text="Just send the same as last time", reply="Sure.")

        assert flags.reorder_confirmed

    def test_upsell_attempted(self, extractor):
        flags = SessionFlags()
        extractor.update_flags(flags, user_text="Okay", reply="Would you also like to try our Croissants?")

        assert flags.upsell_attempted

    def test_customer_done(self, extractor):
        flags = SessionFlags()
        extractor.update_flags(flags, user_text="That’s all, thanks", reply="Perfect.")

        assert flags.customer_done

    def test_flags_never_turn_off(self, extractor):
        flags = SessionFlags()
        flags.customer_done = True
        extractor.update_flags(flags, user_text="Actually I need more", reply="Sure, what else?")

        assert flags.customer_done
