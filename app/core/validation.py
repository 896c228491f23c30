"""
Input Validation Utilities

- Phone number validation, normalization and masking (E.164)
- Text sanitization for inbound message content
- HTML → WhatsApp formatting
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # E.164: + ואחריו 7-15 ספרות
    PHONE_E164 = re.compile(r"^\+[1-9]\d{6,14}$")

    # WhatsApp שולח את ה-wa_id כספרות בלבד, בלי +
    PHONE_WA_ID = re.compile(r"^[1-9]\d{6,14}$")

    CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        """
        Validate phone number format (E.164 or bare WhatsApp id).

        Returns:
            True if valid, False otherwise
        """
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-()]", "", phone)
        return bool(
            ValidationPatterns.PHONE_E164.match(cleaned)
            or ValidationPatterns.PHONE_WA_ID.match(cleaned)
        )

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to E.164 (+<digits>).

        Args:
            phone: Phone number in any common format

        Returns:
            Normalized phone number
        """
        digits = re.sub(r"\D", "", phone or "")
        if digits.startswith("00"):
            digits = digits[2:]
        return f"+{digits}" if digits else ""

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., +1555123****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for stored message content"""

    @staticmethod
    def sanitize(text: str, max_length: int = 4096) -> str:
        """
        הסרת תווי בקרה, קיצוץ רווחים וחיתוך לאורך מקסימלי.

        תוכן ההודעה נשמר as-is (לא HTML-escaped) - ה-escape נעשה בתצוגה.
        """
        if not text:
            return ""
        cleaned = ValidationPatterns.CONTROL_CHARACTERS.sub("", text)
        cleaned = cleaned.strip()
        if len(cleaned) > max_length:
            cleaned = cleaned[:max_length]
        return cleaned


def convert_html_to_whatsapp(text: str) -> str:
    """
    ממיר תגי HTML לפורמט וואטסאפ.

    - Bold: *text* (במקום <b>text</b>)
    - Italic: _text_ (במקום <i>text</i>)
    - Strikethrough: ~text~ (במקום <s>text</s>)
    - Monospace: `text` (במקום <code>text</code>)
    """
    if not text:
        return ""

    result = re.sub(r"<(b|strong)>(.*?)</\1>", r"*\2*", text, flags=re.DOTALL)
    result = re.sub(r"<(i|em)>(.*?)</\1>", r"_\2_", result, flags=re.DOTALL)
    result = re.sub(r"<(s|strike|del)>(.*?)</\1>", r"~\2~", result, flags=re.DOTALL)
    result = re.sub(r"<code>(.*?)</code>", r"`\1`", result, flags=re.DOTALL)
    result = re.sub(r"<pre>(.*?)</pre>", r"```\1```", result, flags=re.DOTALL)

    # תגים שלא נתמכים (a, br וכו')
    result = re.sub(r"<br\s*/?>", "\n", result, flags=re.IGNORECASE)
    result = re.sub(r"<[^>]+>", "", result)

    return result
