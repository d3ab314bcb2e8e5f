from __future__ import annotations

RECEIPT_EXTRACTION_PROMPT = """Analyze this receipt image and extract the expense information.
Reply with exactly one fenced ```json code block containing one object with this structure:

```json
{
  "merchant": "business name as printed on the receipt",
  "amount": 25.99,
  "subtotal": 23.49,
  "tax": 2.50,
  "taxType": "VAT | GST | HST | PST | Sales Tax | Service Tax | null",
  "tax_rate": 10.5,
  "tip": null,
  "date": "2024-01-15",
  "time": "14:30:00",
  "currency": "USD",
  "category": "meal | transport | accommodation | office | other",
  "paymentMethod": "card | cash | bank | other",
  "items": [{"name": "item description", "quantity": 1, "price": 4.50}],
  "confidence": 0.95,
  "notes": "anything else relevant"
}
```

Rules:
1. amount is the final total paid, as a plain number without currency symbols or separators.
2. date uses YYYY-MM-DD and time uses 24-hour HH:MM:SS.
3. category follows the merchant type: meal (restaurants, cafes, groceries), transport
   (airlines, taxis, fuel, parking), accommodation (hotels, lodging), office (supplies,
   software, printing), other (everything else).
4. confidence is between 0.0 and 1.0 and reflects how certain the extraction is.
5. currency is an ISO 4217 code.
6. Use null for anything missing or unreadable. Never guess amounts.
"""
