"""
ARQ Background Worker for Consultation Payments
Runs the scheduled capture/release jobs and on-demand settlement tasks

Run with: arq cnvidas.worker.WorkerSettings
"""

import logging
import os
import sys
from typing import Optional

from arq.connections import RedisSettings

from .config import LOG_LEVEL, PAYMENT_JOB_TIMEOUT_SECONDS
from .database import SessionLocal, init_db
from .scheduler import build_cron_jobs

logger = logging.getLogger(__name__)

REDIS_CONNECT_TIMEOUT = int(os.getenv("REDIS_CONNECT_TIMEOUT", "15"))


def setup_logging():
    """Configure worker logging"""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for noisy in ("stripe", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_redis_settings() -> RedisSettings:
    """Broker connection from REDIS_URL, or from the discrete REDIS_* variables"""
    redis_url = os.getenv("REDIS_URL")

    if redis_url:
        # rediss:// enables TLS, the path selects the database
        settings = RedisSettings.from_dsn(redis_url)
    else:
        settings = RedisSettings(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            password=os.getenv("REDIS_PASSWORD"),
            ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
        )

    settings.conn_timeout = REDIS_CONNECT_TIMEOUT
    settings.conn_retry_delay = 1
    return settings


async def startup(ctx):
    """
    Worker startup: refuses to start without a Stripe secret key
    (ConfigurationError propagates and aborts the worker)
    """
    from .domain.payments.stripe_gateway import StripeGateway

    setup_logging()
    init_db()
    ctx["gateway"] = StripeGateway.from_config()
    logger.info("🚀 Payment worker ready")


async def shutdown(_ctx):
    logger.info("🛑 Payment worker shutting down...")


async def process_appointment_payments_task(ctx):
    """
    Hourly cron job capturing holds of appointments 12-13 hours away.
    """
    from .services.payment_automation import process_appointment_payments

    logger.info("⏰ Running appointment payment capture job")

    db = SessionLocal()
    try:
        return process_appointment_payments(db, ctx["gateway"])
    except Exception as e:
        logger.error(f"❌ Appointment payment capture job failed: {str(e)}")
        raise
    finally:
        db.close()


async def cancel_expired_preauthorizations_task(ctx):
    """
    Cron job (every 6 hours) releasing holds of cancelled appointments.
    """
    from .services.payment_automation import cancel_expired_preauthorizations

    logger.info("⏰ Running pre-authorization release job")

    db = SessionLocal()
    try:
        return cancel_expired_preauthorizations(db, ctx["gateway"])
    except Exception as e:
        logger.error(f"❌ Pre-authorization release job failed: {str(e)}")
        raise
    finally:
        db.close()


def _intent_summary(intent, include_amount: bool = False) -> dict:
    summary = {"id": intent.id, "status": intent.status}
    if include_amount:
        summary["amount"] = intent.amount / 100  # centavos to reais
    return summary


async def capture_appointment_payment_task(ctx, appointment_id: int, actor_id: int):
    """
    On-demand capture requested by a doctor or admin.

    Returns:
        dict with success flag and the captured intent
    """
    from .domain.payments.consultation_service import (
        ConsultationPaymentService,
        PaymentStateError,
    )
    from .domain.payments.repository import AppointmentRepository
    from .domain.payments.stripe_gateway import GatewayError

    db = SessionLocal()
    try:
        actor = AppointmentRepository.get_user(db, actor_id)
        if not actor:
            return {"success": False, "status_code": 404, "message": "Usuário não encontrado"}

        service = ConsultationPaymentService(db, ctx["gateway"])
        try:
            intent = service.capture_appointment_payment(appointment_id, actor)
        except PaymentStateError as e:
            return {"success": False, "status_code": e.status_code, "message": e.message}
        except GatewayError as e:
            return {
                "success": False,
                "status_code": 502,
                "message": "Erro ao capturar pagamento",
                "error": str(e),
            }

        return {
            "success": True,
            "message": "Pagamento capturado com sucesso",
            "payment_intent": _intent_summary(intent, include_amount=True),
        }
    finally:
        db.close()


async def cancel_appointment_payment_task(
    ctx, appointment_id: int, actor_id: int, reason: Optional[str] = None
):
    """
    On-demand cancellation by the patient, the assigned doctor or an admin.

    Returns:
        dict with success flag and the cancelled intent
    """
    from .domain.payments.consultation_service import (
        ConsultationPaymentService,
        PaymentStateError,
    )
    from .domain.payments.repository import AppointmentRepository
    from .domain.payments.stripe_gateway import GatewayError

    db = SessionLocal()
    try:
        actor = AppointmentRepository.get_user(db, actor_id)
        if not actor:
            return {"success": False, "status_code": 404, "message": "Usuário não encontrado"}

        service = ConsultationPaymentService(db, ctx["gateway"])
        try:
            intent = service.cancel_appointment_payment(appointment_id, actor, reason)
        except PaymentStateError as e:
            return {"success": False, "status_code": e.status_code, "message": e.message}
        except GatewayError as e:
            return {
                "success": False,
                "status_code": 502,
                "message": "Erro ao cancelar pagamento",
                "error": str(e),
            }

        return {
            "success": True,
            "message": "Consulta e pagamento cancelados com sucesso",
            "payment_intent": _intent_summary(intent),
        }
    finally:
        db.close()


class WorkerSettings:
    """ARQ Worker Settings"""

    functions = [
        process_appointment_payments_task,
        cancel_expired_preauthorizations_task,
        capture_appointment_payment_task,
        cancel_appointment_payment_task,
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()

    max_jobs = int(os.getenv("ARQ_MAX_JOBS", "10"))
    job_timeout = PAYMENT_JOB_TIMEOUT_SECONDS
    keep_result = int(os.getenv("ARQ_KEEP_RESULT", "3600"))  # Keep job results for 1 hour

    health_check_interval = 60

    # Payment jobs are not retried within a run; the next tick is the retry
    max_tries = 1

    cron_jobs = build_cron_jobs(
        process_appointment_payments_task, cancel_expired_preauthorizations_task
    )
