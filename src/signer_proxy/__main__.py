"""Run the signer proxy with: python -m signer_proxy"""

import sys

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from signer_proxy.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
