"""py-ckp — a filesystem-native runtime for cooperating kernel processes.

Kernels are independent OS processes that address each other by
``ckp://`` URN, record what they produce as immutable receipts, and
exchange work through symlinks in each other's inboxes.  There is no
broker and no database: every piece of shared state is a file.
"""

__version__ = "0.1.0"
