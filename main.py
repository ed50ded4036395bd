#!/usr/bin/env python3
"""
Newsletter API - Main Entry Point
The actual FastAPI app is in newsletter/main.py
"""

import os
import subprocess
import sys


def main():
    """Main entry point for container deployments"""
    cmd = [
        sys.executable, '-m', 'uvicorn',
        'newsletter.main:app',
        '--host', '0.0.0.0',
        '--port', os.getenv('PORT', '8080')
    ]

    print(f"Running: {' '.join(cmd)}")
    subprocess.run(cmd, check=False)


if __name__ == '__main__':
    main()
