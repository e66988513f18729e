#!/usr/bin/env python3
"""
Database Initialization Script for ExamCenter
Creates every table and seeds the default administrator account.
"""
import logging

from examcenter.config import Config
from examcenter.db import init_database


def main():
    logging.basicConfig(level=Config.LOG_LEVEL, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    init_database(Config.DATABASE, Config.DEFAULT_ADMIN_EMAIL, Config.DEFAULT_ADMIN_PASSWORD)
    print(f"Database initialized at {Config.DATABASE}")
    print(f"Default admin: {Config.DEFAULT_ADMIN_EMAIL}")


if __name__ == "__main__":
    main()
