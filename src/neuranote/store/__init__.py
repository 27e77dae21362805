"""Document store: one Markdown file per record.

Layout:
    ~/.neuranote/data/
    ├── summaries/<id>.md              # summarizedText as body, rest in frontmatter
    ├── reminders/<id>.md              # description as body
    ├── token_balances/<userId>.md
    ├── token_transactions/<id>.md
    ├── blobs/<userId>/...             # LocalBlobStorage uploads
    └── .versions/                     # Timestamped backups (10 per document)
"""
