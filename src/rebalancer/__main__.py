"""Entry point for running as module: python -m rebalancer"""

# Load .env file before importing anything else
from dotenv import load_dotenv
load_dotenv()

from rebalancer.runner import main

if __name__ == "__main__":
    main()
