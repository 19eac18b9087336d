"""
fsproxy File Operation Mediation

Maps untrusted relative paths onto a confined sandbox root and performs
read, write and list operations with per-path readers-writer locking.
"""
