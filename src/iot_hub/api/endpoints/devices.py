from fastapi import APIRouter, HTTPException
from ...models.device import DeviceCommand, DispatchResult, OTARequest
from ...utils.exceptions import CommunicationError, NotConnectedError
from ...utils.logging import get_logger
from ..dependencies import DispatcherDependency

logger = get_logger(__name__)

device_router = APIRouter()


'''
# Send a command
response = await client.post(f"/api/v1/devices/{device_id}/commands", json={"command": "reboot"})

# Request a firmware update
response = await client.post(f"/api/v1/devices/{device_id}/ota",
                             json={"firmware_version": "2.0.0", "firmware_url": url})
'''

@device_router.post("/devices/{device_id}/commands", response_model=DispatchResult)
async def send_command(device_id: str, command: DeviceCommand,
                       dispatcher: DispatcherDependency = None) -> DispatchResult:
    try:
        return await dispatcher.send_command(device_id, command.command, command.params)
    except NotConnectedError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except CommunicationError as e:
        logger.error(f"Failed to send command to {device_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending command to device {device_id}: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to send command: {str(e)}"
        )


@device_router.post("/devices/{device_id}/ota", response_model=DispatchResult)
async def send_ota_update(device_id: str, request: OTARequest,
                          dispatcher: DispatcherDependency = None) -> DispatchResult:
    try:
        return await dispatcher.send_ota_update(device_id, request.firmware_version, request.firmware_url)
    except NotConnectedError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except CommunicationError as e:
        logger.error(f"Failed to send OTA update to {device_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending OTA update to device {device_id}: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to send OTA update: {str(e)}"
        )
