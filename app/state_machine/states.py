"""
State Definitions for the Customer Conversation Flow
"""
from enum import Enum


class ConversationState(str, Enum):
    """States for customer conversation flow"""

    IDLE = "idle"
    BROWSING = "browsing"
    VIEWING_PRODUCT = "viewing_product"
    CART_MANAGEMENT = "cart_management"

    # Checkout wizard
    CHECKOUT_ADDRESS = "checkout_address"
    CHECKOUT_PAYMENT = "checkout_payment"
    CHECKOUT_CONFIRM = "checkout_confirm"

    AWAITING_HUMAN = "awaiting_human"
    COMPLETED = "completed"


class ConversationEvent(str, Enum):
    """Events that drive the conversation flow"""

    START = "start"
    VIEW_CATEGORY = "view_category"
    SEARCH = "search"
    VIEW_PRODUCT = "view_product"
    ADD_TO_CART = "add_to_cart"
    VIEW_CART = "view_cart"
    MODIFY_CART = "modify_cart"
    START_CHECKOUT = "start_checkout"
    ENTER_ADDRESS = "enter_address"
    SELECT_PAYMENT = "select_payment"
    CONFIRM_ORDER = "confirm_order"
    REQUEST_HUMAN = "request_human"
    AGENT_TAKEOVER = "agent_takeover"
    TIMEOUT = "timeout"
    RESET = "reset"


# מצב מקור "*" = מכל מצב
ANY_STATE = "*"

S = ConversationState
E = ConversationEvent

# (from_state, event) -> (to_state, action)
# action הוא שם הפעולה שהשכבה המציגה מבצעת (הצגת תפריט, עגלה וכו')
TRANSITIONS: dict[tuple[str, ConversationEvent], tuple[ConversationState, str]] = {
    # Browsing
    (S.IDLE, E.SEARCH): (S.BROWSING, "show_search_results"),
    (S.IDLE, E.VIEW_CATEGORY): (S.BROWSING, "show_category_products"),
    (S.BROWSING, E.VIEW_CATEGORY): (S.BROWSING, "show_category_products"),
    (S.BROWSING, E.SEARCH): (S.BROWSING, "show_search_results"),
    (S.BROWSING, E.VIEW_PRODUCT): (S.VIEWING_PRODUCT, "show_product_details"),
    (S.BROWSING, E.VIEW_CART): (S.CART_MANAGEMENT, "show_cart"),

    # Product
    (S.VIEWING_PRODUCT, E.ADD_TO_CART): (S.CART_MANAGEMENT, "add_item_and_show_cart"),
    (S.VIEWING_PRODUCT, E.VIEW_CART): (S.CART_MANAGEMENT, "show_cart"),
    (S.VIEWING_PRODUCT, E.SEARCH): (S.BROWSING, "show_search_results"),
    (S.VIEWING_PRODUCT, E.VIEW_PRODUCT): (S.VIEWING_PRODUCT, "show_product_details"),

    # Cart
    (S.CART_MANAGEMENT, E.START_CHECKOUT): (S.CHECKOUT_ADDRESS, "request_address"),
    (S.CART_MANAGEMENT, E.MODIFY_CART): (S.CART_MANAGEMENT, "update_cart_and_show"),
    (S.CART_MANAGEMENT, E.ADD_TO_CART): (S.CART_MANAGEMENT, "add_item_and_show_cart"),
    (S.CART_MANAGEMENT, E.VIEW_CART): (S.CART_MANAGEMENT, "show_cart"),
    (S.CART_MANAGEMENT, E.VIEW_PRODUCT): (S.VIEWING_PRODUCT, "show_product_details"),
    (S.CART_MANAGEMENT, E.SEARCH): (S.BROWSING, "show_search_results"),

    # Checkout
    (S.CHECKOUT_ADDRESS, E.ENTER_ADDRESS): (S.CHECKOUT_PAYMENT, "save_address_and_request_payment"),
    (S.CHECKOUT_PAYMENT, E.SELECT_PAYMENT): (S.CHECKOUT_CONFIRM, "show_order_summary"),
    (S.CHECKOUT_CONFIRM, E.CONFIRM_ORDER): (S.COMPLETED, "create_order_and_confirm"),
    (S.CHECKOUT_CONFIRM, E.VIEW_CART): (S.CART_MANAGEMENT, "show_cart"),

    # Human handoff
    (S.AWAITING_HUMAN, E.AGENT_TAKEOVER): (S.IDLE, "transfer_to_agent"),

    # Global
    (ANY_STATE, E.START): (S.BROWSING, "show_main_menu"),
    (ANY_STATE, E.REQUEST_HUMAN): (S.AWAITING_HUMAN, "notify_agent"),
    (ANY_STATE, E.TIMEOUT): (S.IDLE, "preserve_cart"),
    (ANY_STATE, E.RESET): (S.IDLE, "clear_context"),
}


def find_transition(
    current: str, event: ConversationEvent
) -> tuple[ConversationState, str] | None:
    """מעבר ספציפי למצב קודם למעבר גלובלי"""
    try:
        state = ConversationState(current)
    except ValueError:
        state = None
    specific = TRANSITIONS.get((state, event)) if state is not None else None
    return specific or TRANSITIONS.get((ANY_STATE, event))
