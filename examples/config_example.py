"""
Configuration Examples for the VendHub fiscal core
Demonstrates the ways to configure and run the core
"""

from decimal import Decimal

from vendhub_fiscal import (
    ConfigLoader,
    ConfigValidator,
    FiscalConfig,
    FiscalCore,
    PaymentSplit,
    SaleEvent,
    SaleLineItem,
)


# =============================================================================
# Example 1: Programmatic Configuration
# =============================================================================

def programmatic_config_example() -> FiscalConfig:
    """Configure the core programmatically"""
    loader = ConfigLoader()

    return loader.load(
        env=False,
        config={
            # Provider calls
            "provider_timeout": 30000,

            # Retry policy
            "max_retries": 5,
            "retry_base_delay": 1000,
            "retry_max_delay": 300000,
            "retry_jitter": 0.2,

            # Priority overrides per operation kind
            "priorities": {"shift_close": 1},

            # Workers
            "worker_count": 4,
            "poll_interval": 1000,

            # Audit logging
            "enable_audit_log": True,
            "audit_log_path": "./logs/fiscal-audit.log",

            # State persistence and credential sealing
            "state_store_path": "./data/fiscal-state.json",
            "vault_secret": "change-me-master-secret",
        },
    )


# =============================================================================
# Example 2: File-based Configuration
# =============================================================================

def file_config_example() -> FiscalConfig:
    """Load configuration from JSON file"""
    loader = ConfigLoader()

    # Load from JSON file (see create_config_template_example)
    return loader.load(
        file="./config/fiscal_config.json",
        env=True,  # Environment variables override the file
    )


# =============================================================================
# Example 3: Environment Variables Configuration
# =============================================================================

def env_config_example() -> FiscalConfig:
    """
    Load configuration from environment variables

    Set these environment variables before running:

    export FISCAL_MAX_RETRIES="8"
    export FISCAL_WORKER_COUNT="2"
    export FISCAL_STATE_STORE_PATH="./data/fiscal-state.json"
    export FISCAL_VAULT_SECRET="change-me-master-secret"
    export FISCAL_ENABLE_AUDIT_LOG="true"
    """
    loader = ConfigLoader()
    return loader.load(env=True)


# =============================================================================
# Example 4: Configuration Validation
# =============================================================================

def validation_example() -> None:
    """Validate configuration before use"""
    validator = ConfigValidator()

    result = validator.validate({
        "max_retries": 0,
        "priorities": {"z_report": 3},
    })

    if not result.valid:
        print("Configuration validation failed:")
        for error in result.errors:
            print(f"  - {error.field}: {error.message}")


# =============================================================================
# Example 5: Creating a Configuration Template
# =============================================================================

def create_config_template_example() -> None:
    """Create a template configuration file"""
    ConfigLoader().create_template("./config/fiscal_config.template.json")
    print("Configuration template created at ./config/fiscal_config.template.json")


# =============================================================================
# Example 6: A sandbox shift
# =============================================================================

def sandbox_shift_example() -> None:
    """Open a shift, fiscalize one sale and close the shift on the sandbox provider"""
    config = ConfigLoader().load(env=False, config={"enable_audit_log": False})

    with FiscalCore.from_config(config) as core:
        device = core.registry.register("org-1", "Lobby kiosk", "sandbox")
        core.registry.activate(device.id)

        core.shifts.request_open(device.id, cashier="Kiosk operator")
        core.run_pending()

        item = core.fiscalization.submit_sale(SaleEvent(
            sale_id="order-1001",
            machine_id="VM-001",
            device_id=device.id,
            line_items=[
                SaleLineItem(
                    name="Coca-Cola 0.5",
                    tax_code="02202001001000000",
                    price=Decimal("8000"),
                    vat_rate=Decimal("12"),
                ),
            ],
            payment=PaymentSplit(card=Decimal("8000")),
        ))
        core.run_pending()

        status = core.fiscalization.receipt_status(item.receipt_id)
        print(f"Receipt {status.receipt_id}: {status.status.value} {status.fiscal_number}")

        core.shifts.request_close(device.id)
        core.run_pending()
        shift = core.shifts.shift_history(device.id, limit=1)[0]
        print(f"Shift {shift.shift_number} closed, Z-report {shift.z_report_number}")


# =============================================================================
# Run Examples
# =============================================================================

if __name__ == "__main__":
    print("=== VendHub Fiscal Configuration Examples ===\n")

    print("4. Configuration Validation:")
    validation_example()
    print()

    print("5. Create Configuration Template:")
    create_config_template_example()
    print()

    print("6. Sandbox shift:")
    sandbox_shift_example()
