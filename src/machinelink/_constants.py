"""Internal constants shared across the library."""

AGENT_URL = "http://localhost:3001"
USER_AGENT = "machinelink"

#: ``code`` returned by a healthy agent ping.
PING_SUCCESS_CODE = "success"

#: Settings keys holding the machine's display metadata.
MACHINE_NAME_KEY = "identity.machine.name"
MACHINE_ICON_KEY = "identity.machine.icon_url"

# ------------------------------------------------------------------
# Agent commands (one per round trip)
# ------------------------------------------------------------------

CMD_PING_STATUS = "get_ping_status"
CMD_PROVISION_STATUS = "get_machine_provision_status"
CMD_MACHINE_ID = "get_machine_id"
CMD_MACHINE_INFO = "get_machine_info"
CMD_GENERATE_CODE = "generate_code"
CMD_SUBMIT_CODE = "provision_code"
CMD_EXIT = "exit_app"

# ------------------------------------------------------------------
# Provisioning backend error codes
# ------------------------------------------------------------------

#: Agent error text embeds one of these codes. Order matters: the first
#: code found in the message wins.
PROVISIONING_ERROR_LABELS: tuple[tuple[str, str], ...] = (
    ("UnknownError", "Unknown Error"),
    ("UnauthorizedError", "Unauthorized Error"),
    ("NotFoundError", "NotFound Error"),
    ("BadRequestError", "Bad Request Error"),
    ("UnreachableError", "Unreachable Error"),
    ("InternalServerError", "Internal Server Error"),
    ("CSRSignReadFileError", "CSRSign ReadFile Error"),
    ("CertificateWriteError", "CertificateWrite Error"),
    ("SendEventError", "SendEvent Error"),
    ("SettingsDatabaseDeleteError", "Settings Database Delete Error"),
    ("ParseResponseError", "Parse Response Error"),
    ("ChannelSendMessageError", "Channel Send Message Error"),
    ("ChannelReceiveMessageError", "Channel Receive Message Error"),
    ("MachineMismatchError", "Machine Mismatch Error"),
    ("ExtractMessagePayloadError", "Extract Message Payload Error"),
    ("DeprovisioningError", "Deprovisioning Error"),
    ("SubscribeToNatsError", "Subscribe ToNats Error"),
    ("PayloadDeserializationError", "Payload Deserialization Error"),
    ("InvalidMachineIdError", "InvalidMachineIdError Error"),
)

PARSE_RESPONSE_ERROR_CODE = "ParseResponseError"


def provisioning_error_label(message: str) -> str | None:
    """Map raw agent error text to a human readable label.

    Returns ``None`` when the message carries no known provisioning code.
    """
    lowered = message.lower()
    for code, label in PROVISIONING_ERROR_LABELS:
        if code.lower() in lowered:
            return label
    return None
