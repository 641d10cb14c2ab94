#!/usr/bin/env python3
"""
Retail Ledger Entry Point

Starts the FastAPI server with the retail ledger.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from retail_ledger.api import run_server
from retail_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("🏦 Starting Retail Ledger...")
    print("🔐 Transaction PIN required for every funds movement")
    print("💰 All amounts use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Retail Ledger...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
