"""Default prompts used by the inference client.

Keeping prompts in a central location makes it easier to iterate on
their content and keeps the schema the model is asked for next to the
one ``receipt_scanner.services.normalizer`` expects.
"""

from __future__ import annotations

from textwrap import dedent


def get_default_extraction_prompt() -> str:
    """Return the instruction sent alongside an uploaded receipt document.

    The model is asked for a single JSON object and nothing else.  Replies
    that ignore this (code fences, prose) are still recovered by the
    normaliser, so the wording only needs to make compliance likely.
    """
    return dedent(
        """
        You are a receipt scanning assistant. Extract the data from the
        attached receipt document and return it as a single JSON object
        with exactly this structure:

        {
          "merchant": {
            "name": "Store Name",
            "address": "123 Main St, City, Country",
            "contact": "+123456789"
          },
          "transaction": {
            "date": "YYYY-MM-DD",
            "receipt_number": "ABC123456",
            "payment_method": "Credit Card"
          },
          "items": [
            {
              "name": "Item 1",
              "quantity": 2,
              "unit_price": 10.00,
              "total_price": 20.00
            }
          ],
          "totals": {
            "subtotal": 20.00,
            "tax": 2.00,
            "total": 22.00,
            "currency": "USD"
          },
          "summary": "One or two sentences describing the purchase."
        }

        Use numbers (not strings) for quantities and amounts and an ISO
        4217 code for the currency. Use an empty string or 0 for values
        that are not present on the receipt; do not guess. Respond with
        the JSON object only, without Markdown or any other text.
        """
    ).strip()
