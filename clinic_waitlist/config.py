from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Waitlist engine
    offer_window_hours: int = 24          # How long a notified patient has to book
    candidate_lookahead: int = 10         # Active entries read per claim attempt
    max_claim_attempts: int = 3           # Re-reads before on_slot_freed gives up

    # Expiry sweeper
    sweep_interval_minutes: int = 60
    scheduler_enabled: bool = True
    cascade_on_expiry: bool = True

    # Twilio (SMS offers)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Resend (email offers)
    resend_api_key: str = ""
    email_from: str = "Waitlist <waitlist@example.com>"

    # Delivery
    dry_run: bool = False                 # Log offers instead of sending them

    # Server
    server_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    port: int = 8000

    # Practice information
    business_name: str = "Bright Smile Dental"
    business_phone: str = ""
    office_timezone: str = "America/New_York"
    app_url: str = "http://localhost:3000"  # Patient portal, used for "Book Now" links

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
