# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    VaultError,
    vault_enabled,
    get_database_url,
    get_valkey_url,
    get_jwt_secret,
    get_email_config,
)
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.email_client import EmailGatewayClient, EmailGatewayError
