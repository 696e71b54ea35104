"""
FileRecord module - metadata records for encrypted files.

Each record points at one ciphertext blob and carries the wrapped key,
iv and MAC needed to decrypt it.
"""
