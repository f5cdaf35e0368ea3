"""Top-level package for the receipt scanner backend.

The package contains the FastAPI application that accepts PDF receipts,
the dramatiq worker that turns an uploaded document into a structured
receipt record, and the service layer shared by both: the inference
client, the output normaliser, the receipt store, object storage and the
entitlement (usage metering) client.

To run the API locally you can execute:

```bash
uvicorn receipt_scanner.api.main:app --reload
```

and start a worker with:

```bash
python -m dramatiq receipt_scanner.worker --processes 1 --threads 4
```

Configuration is read from environment variables or a ``.env`` file at
the project root; see ``receipt_scanner.core.config``.
"""

__all__: list[str] = []
