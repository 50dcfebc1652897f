#!/usr/bin/env python3
"""
Main entry point for KVM Hot-Backup
"""
from kvm_hotbackup.cli import app


def main():
    app()


if __name__ == "__main__":
    main()
