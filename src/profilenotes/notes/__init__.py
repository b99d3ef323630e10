"""Note records — per-user free text plus a short rating history.

Storage layout (one shared key in the persisted store):
    notes
    └── <normalized username>
        ├── note        free text, may be empty
        ├── scores      [{value: 1..5, timestamp: ms}], newest last, at most 5
        ├── createdAt   ms
        └── updatedAt   ms

A record is deleted as soon as both ``note`` and ``scores`` are empty.
"""
