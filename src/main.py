"""
Taskbridge - OAuth 2.0 authorization server for MCP clients.

Users sign in through a social identity provider, hand over their Redmine,
Jira or Monday credentials once, and MCP clients receive opaque bearer
tokens that carry those credentials encrypted. Operator commands
(create-organization, create-user, approve-user, revoke-tokens,
purge-codes) hang off the Flask CLI.

Run with `python src/main.py` (PORT, FLASK_ENV from the environment or
.env) or `flask --app main run` from src/.
"""
from taskbridge.core import create_app
from dotenv import load_dotenv
import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

# Create application
app = create_app()

if __name__ == '__main__':
    port = int(os.getenv('PORT', 8000))
    debug = os.getenv('FLASK_ENV') == 'development'

    logger.info(f"Starting Taskbridge on port {port} (debug={debug})")
    app.run(host='0.0.0.0', port=port, debug=debug)
