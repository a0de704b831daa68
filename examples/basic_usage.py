"""
Example: Basic Service Layer usage with sap_b1
==============================================

This example shows how to query and write SAP Business One data through
the resilient client.
"""

from sap_b1 import (
    CircuitOpenError,
    ClientError,
    ConnectionConfig,
    ConnectionContext,
    PoolConfig,
    RetryConfig,
)


def example_basic_query():
    """Query items with an explicit configuration."""

    cfg = ConnectionConfig(
        base_url="https://your-b1.example.com:50000",
        company_db="SBODEMOUS",
        username="manager",
        password="PASSWORD",
        verify=True,
        retry=RetryConfig(times=3, sleep_ms=500),
    )

    with ConnectionContext(cfg) as conn:
        items = conn.client.get(
            "Items",
            params={"$select": "ItemCode,ItemName", "$filter": "QuantityOnStock gt 0", "$top": 20},
        )
        print(f"Found {len(items['value'])} items in stock")

        # Composite and quoted keys are rendered for you
        partner = conn.client.find("BusinessPartners", "C20000")
        print("Partner:", partner.get("CardName"))


def example_connection_context():
    """Using ConnectionContext with SAP_B1_* environment variables."""

    # Reads SAP_B1_URL, SAP_B1_COMPANY_DB, SAP_B1_USERNAME, SAP_B1_PASSWORD
    with ConnectionContext() as conn:
        for page in conn.client.paginate("Orders", {"$select": "DocEntry,CardCode,DocTotal"}):
            for order in page["value"]:
                print(order["DocEntry"], order["CardCode"], order["DocTotal"])


def example_pooled_workers():
    """Share a bounded set of sessions between worker threads."""
    from concurrent.futures import ThreadPoolExecutor

    cfg = ConnectionConfig.from_env(pool=PoolConfig(enabled=True, min_size=2, max_size=5))
    with ConnectionContext(cfg) as conn:
        conn.pool.warm_up()

        def fetch(code):
            try:
                return conn.client.find("Items", code)
            except ClientError as e:
                return {"ItemCode": code, "error": e.code}
            except CircuitOpenError as e:
                return {"ItemCode": code, "error": f"upstream unavailable, retry in {e.retry_after:.0f}s"}

        with ThreadPoolExecutor(max_workers=10) as executor:
            for item in executor.map(fetch, ["A00001", "A00002", "A00003", "A00004"]):
                print(item)

        print("Pool:", conn.pool.stats())


def example_health():
    """Probe the connection."""
    with ConnectionContext() as conn:
        result = conn.health()
        print(result.to_dict())


if __name__ == "__main__":
    # Uncomment the example you want to run
    # example_basic_query()
    # example_connection_context()
    # example_pooled_workers()
    # example_health()

    print("Set up your environment variables and uncomment an example to run.")
    print("Required: SAP_B1_URL, SAP_B1_COMPANY_DB, SAP_B1_USERNAME, SAP_B1_PASSWORD")
