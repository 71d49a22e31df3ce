# atlas_board/__init__.py
# Local-first country / message / comment board with a replicating SQLite document store.
__version__ = "0.1.0"
