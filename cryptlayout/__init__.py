"""
cryptlayout - Encrypted storage provisioning for unattended Linux deployment

This package computes GPT partition layouts, sets up LUKS2 containers, btrfs
subvolumes and mounts, and generates the fstab, crypttab and early-boot hooks
that bring the encrypted system up again at boot.
"""

__version__ = "0.1.0"
