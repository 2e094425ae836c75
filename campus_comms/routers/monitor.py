from fastapi import APIRouter, Depends

from campus_comms.core.router_guard import require_auth_user, require_role
from campus_comms.models import UserRole
from campus_comms.schemas import UserRef
from campus_comms.services.threshold_monitor import NotificationThresholdMonitor, get_threshold_monitor


router = APIRouter(prefix='/api/admin/attendance-monitor', tags=['Attendance Monitor'])


def require_office(user: UserRef = Depends(require_auth_user)) -> UserRef:
    require_role(user, {UserRole.OFFICE})
    return user


@router.get('/status')
def monitor_status(
    _: UserRef = Depends(require_office),
    monitor: NotificationThresholdMonitor = Depends(get_threshold_monitor),
):
    return monitor.get_status().model_dump(mode='json')


@router.get('/retry-queue')
def retry_queue(
    _: UserRef = Depends(require_office),
    monitor: NotificationThresholdMonitor = Depends(get_threshold_monitor),
):
    return {
        'summary': monitor.get_retry_queue_status().model_dump(mode='json'),
        'entries': [entry.model_dump(mode='json') for entry in monitor.get_retry_queue()],
    }


@router.delete('/retry-queue')
def clear_retry_queue(
    _: UserRef = Depends(require_office),
    monitor: NotificationThresholdMonitor = Depends(get_threshold_monitor),
):
    return {'ok': True, 'cleared': monitor.clear_retry_queue()}


@router.post('/run')
def run_now(
    _: UserRef = Depends(require_office),
    monitor: NotificationThresholdMonitor = Depends(get_threshold_monitor),
):
    return monitor.run_manual_check().model_dump(mode='json')


@router.post('/start')
def start_monitor(
    _: UserRef = Depends(require_office),
    monitor: NotificationThresholdMonitor = Depends(get_threshold_monitor),
):
    monitor.start(strict=True)
    return {'ok': True, 'status': monitor.get_status().model_dump(mode='json')}


@router.post('/stop')
def stop_monitor(
    _: UserRef = Depends(require_office),
    monitor: NotificationThresholdMonitor = Depends(get_threshold_monitor),
):
    stopped = monitor.stop()
    return {'ok': True, 'stopped': stopped, 'status': monitor.get_status().model_dump(mode='json')}
