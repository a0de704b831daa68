"""
Example: $batch with changesets
===============================

Reads and an atomic group of writes in one round trip.
"""

from sap_b1 import BatchPartialFailureError, ConnectionContext


def example_order_with_partner_update():
    with ConnectionContext() as conn:
        batch = conn.client.batch()
        batch.get("Items('A00001')")

        # Both writes commit together or not at all
        with batch.changeset():
            batch.post("Orders", {
                "CardCode": "C20000",
                "DocDueDate": "2026-12-31",
                "DocumentLines": [{"ItemCode": "A00001", "Quantity": 2}],
            })
            batch.patch("BusinessPartners('C20000')", {"Notes": "Ordered A00001"})

        batch.get("BusinessPartners('C20000')?$select=CardCode,Notes")

        response = batch.execute()
        for result in response:
            print(result.index, result.item.method, result.item.path, result.status)

        try:
            response.raise_for_failures()
        except BatchPartialFailureError as e:
            for failed in e.failures:
                note = " (whole changeset rolled back)" if failed.coupled else ""
                print(f"request {failed.index} failed: {failed.error_message}{note}")


if __name__ == "__main__":
    # example_order_with_partner_update()
    print("Set SAP_B1_* environment variables and uncomment the example to run.")
