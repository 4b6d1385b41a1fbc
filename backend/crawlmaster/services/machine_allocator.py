import asyncio
import json
import logging
import uuid

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from crawlmaster.config import settings
from crawlmaster.models import ElasticIp, Machine
from crawlmaster.models.base import utcnow
from crawlmaster.models.enums import ClusterSize, MachineStatus, WorkerType
from crawlmaster.schemas.config import ElasticIpSpec
from crawlmaster.services import shell
from crawlmaster.services.cloud import Ec2Client
from crawlmaster.services.shell import ShellCommandError

logger = logging.getLogger(__name__)

INSTANCE_TYPES = {
    ClusterSize.small.value: "t2.small",
    ClusterSize.medium.value: "t2.medium",
    ClusterSize.larger.value: "t2.large",
    ClusterSize.large.value: "t2.xlarge",
    ClusterSize.huge.value: "t2.2xlarge",
}
WORKER_PORTS = {
    WorkerType.browser.value: 3333,
    WorkerType.http.value: 4444,
}
ENGINE_LABELS = {
    WorkerType.browser.value: "type=crawler",
    WorkerType.http.value: "type=http-crawler",
}
SWARM_PORT = 2377
ACTIVE_MACHINE_STATUSES = (MachineStatus.initial.value, MachineStatus.running.value)

HEALTH_POLL_INTERVAL_SECONDS = 10
HEALTH_POLL_MAX_SECONDS = 180
HEALTH_REQUEST_TIMEOUT_SECONDS = 5

CLOUD_ERRORS = (BotoCoreError, ClientError)


class MachineAllocator:
    """Provisions and tears down the docker swarm machines of the container backend."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        ec2: Ec2Client | None = None,
        run_command=shell.run,
        http_transport: httpx.AsyncBaseTransport | None = None,
        poll_interval: float = HEALTH_POLL_INTERVAL_SECONDS,
        max_wait: float = HEALTH_POLL_MAX_SECONDS,
    ):
        self.db = db
        self.ec2 = ec2 or Ec2Client(settings.aws_region)
        self.run = run_command
        self.http_transport = http_transport
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.ready = False

    async def setup(self) -> bool:
        if self.ready:
            return True

        try:
            result = await self.run(["docker-machine", "--version"])
        except (ShellCommandError, OSError) as exc:
            logger.error("docker-machine is not available: %s", exc)
            return False
        if not settings.dry_run and "docker-machine" not in result.stdout:
            logger.error("Unexpected docker-machine version output: %s", result.stdout)
            return False

        missing = [
            name
            for name in ("aws_access_key", "aws_secret_key", "master_ip", "docker_user", "swarm_join_token")
            if not getattr(settings, name)
        ]
        if missing:
            logger.error("Cannot manage machines, missing settings: %s", ", ".join(missing))
            return False

        machines = await self.get_machines()
        logger.info(
            "Machine allocator ready in region %s with ami %s and %s machines",
            settings.aws_region,
            settings.machine_ami,
            len(machines),
        )
        self.ready = True
        return True

    async def get_machines(self, worker_type: str | None = None, statuses=ACTIVE_MACHINE_STATUSES) -> list[Machine]:
        stmt = select(Machine).where(Machine.status.in_(statuses)).order_by(Machine.id)
        if worker_type is not None:
            stmt = stmt.where(Machine.type == worker_type)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def claim_elastic_ip(self) -> ElasticIpSpec | None:
        candidate = aliased(ElasticIp)
        next_id = (
            select(candidate.id)
            .where(candidate.used.is_(False))
            .order_by(candidate.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(ElasticIp)
            .where(ElasticIp.id == next_id)
            .where(ElasticIp.used.is_(False))
            .values(used=True)
            .returning(ElasticIp.eid, ElasticIp.ip)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        await self.db.commit()
        if row is None:
            return None
        logger.info("Claimed elastic ip %s", row.ip)
        return ElasticIpSpec(eid=row.eid, ip=row.ip)

    async def free_elastic_ip(self, eid: str) -> bool:
        result = await self.db.execute(
            update(ElasticIp)
            .where(ElasticIp.eid == eid)
            .values(used=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Freed elastic ip %s", eid)
        return result.rowcount > 0

    async def allocate(
        self,
        worker_type: str,
        num_machines: int = 1,
        size: str = ClusterSize.large.value,
    ) -> bool:
        """Bring the fleet of ``worker_type`` machines up to ``num_machines``.

        Idempotent: machines that are already allocated count towards the
        target. Returns False as soon as one machine cannot be allocated.
        """
        if not await self.setup():
            return False

        machines = await self.get_machines(worker_type)
        num_to_alloc = num_machines - len(machines)
        logger.info("%s %s machines are already allocated", len(machines), worker_type)
        if num_to_alloc <= 0:
            return True

        logger.info("Allocating %s %s machines with size %s", num_to_alloc, worker_type, size)
        for _ in range(num_to_alloc):
            eip = await self.claim_elastic_ip()
            if eip is None:
                logger.error("No free elastic ip, additional machines make no sense")
                return False

            machine = None
            try:
                machine = await self._create_machine_record(worker_type, size, eip)
                await self.provision(machine)
                await self.associate_elastic_ip(machine)
                await self.run(["docker-machine", "regenerate-certs", machine.name, "--force"])
                logger.info("Regenerated certs for machine %s", machine.name)
                await self.join_swarm(machine)
                if not await self.wait_until_service_online(machine):
                    raise TimeoutError(f"{machine.name} did not come online")
            except Exception:
                logger.exception("Failed to allocate %s machine", worker_type)
                await self._rollback(machine, eip)
                return False

            machine.status = MachineStatus.running.value
            await self.db.commit()
            logger.info("Machine %s is running with ip %s", machine.name, eip.ip)

        return True

    async def _create_machine_record(self, worker_type: str, size: str, eip: ElasticIpSpec) -> Machine:
        machine = Machine(
            name=f"crawl-worker-{uuid.uuid4().hex[:12]}",
            type=worker_type,
            status=MachineStatus.initial.value,
            size=INSTANCE_TYPES.get(size, INSTANCE_TYPES[ClusterSize.small.value]),
            region=settings.aws_region,
            info={},
            eip=eip.model_dump(),
        )
        self.db.add(machine)
        await self.db.commit()
        return machine

    async def provision(self, machine: Machine) -> None:
        command = [
            "docker-machine", "create",
            "--driver", "amazonec2",
            "--amazonec2-open-port", str(WORKER_PORTS[machine.type]),
            "--amazonec2-region", settings.aws_region,
            "--amazonec2-instance-type", machine.size,
            "--amazonec2-ami", settings.machine_ami,
            "--amazonec2-security-group", settings.machine_security_group,
            "--amazonec2-ssh-user", settings.docker_user,
            "--swarm",
            "--swarm-discovery", f"token://{settings.swarm_join_token}",
            "--swarm-addr", settings.master_ip,
            "--engine-label", ENGINE_LABELS[machine.type],
            machine.name,
        ]
        await self.run(command, timeout=900)
        machine.info = await self.inspect(machine.name)
        await self.db.commit()
        logger.info("Allocated machine %s with size %s in region %s", machine.name, machine.size, machine.region)

    async def inspect(self, name: str) -> dict:
        if settings.dry_run:
            return {"Driver": {"IPAddress": "127.0.0.1"}}
        result = await self.run(["docker-machine", "inspect", name])
        return json.loads(result.stdout)

    async def associate_elastic_ip(self, machine: Machine) -> None:
        if settings.dry_run:
            logger.info("[dry-run] associate %s with %s", machine.eip["eid"], machine.name)
            return
        instance_id = machine.info["Driver"]["InstanceId"]
        response = await self.ec2.associate_address(instance_id, machine.eip["eid"])
        if "AssociationId" not in response:
            raise ValueError(f"Cannot associate elastic ip {machine.eip['ip']}: {response}")
        logger.info("Assigned elastic ip %s to machine %s", machine.eip["ip"], machine.name)

    async def join_swarm(self, machine: Machine) -> None:
        join = (
            f"sudo docker swarm join --token {settings.swarm_join_token} "
            f"--advertise-addr {machine.eip['ip']} {settings.master_ip}:{SWARM_PORT}"
        )
        await self.run(["docker-machine", "ssh", machine.name, join])
        logger.info("Machine %s joined swarm master %s", machine.name, settings.master_ip)

    def service_url(self, machine: Machine) -> str:
        return f"http://{machine.eip['ip']}:{WORKER_PORTS[machine.type]}"

    async def wait_until_service_online(self, machine: Machine) -> bool:
        """Poll the worker service until it answers with status 200."""
        url = self.service_url(machine) + "/"
        waited = 0.0
        async with httpx.AsyncClient(
            transport=self.http_transport, timeout=HEALTH_REQUEST_TIMEOUT_SECONDS
        ) as client:
            while waited <= self.max_wait:
                try:
                    response = await client.get(url)
                    body = response.json()
                    if isinstance(body, dict) and body.get("status") == 200:
                        logger.info("Service %s online after %ss", url, waited)
                        return True
                except (httpx.HTTPError, ValueError):
                    logger.warning("Crawl worker not online after %ss on %s", waited, url)
                await asyncio.sleep(self.poll_interval)
                waited += self.poll_interval
        return False

    async def _rollback(self, machine: Machine | None, eip: ElasticIpSpec) -> None:
        if machine is None:
            await self.free_elastic_ip(eip.eid)
            return
        if not await self.cleanup(machine):
            machine.status = MachineStatus.failed.value
            await self.db.commit()
            logger.critical(
                "Machine %s failed during allocation and could not be torn down, "
                "elastic ip %s stays reserved",
                machine.name,
                eip.ip,
            )

    async def cleanup(self, machine: Machine) -> bool:
        """Stop, kill or terminate the machine, in that order of preference."""
        stopped = False

        try:
            logger.info("Gracefully stopping machine %s", machine.name)
            await self.run(["docker-machine", "stop", machine.name], timeout=300)
            stopped = True
        except ShellCommandError as exc:
            logger.warning("Cannot stop machine %s gracefully: %s", machine.name, exc)

        if not stopped:
            try:
                logger.warning("Forcefully killing machine %s", machine.name)
                await self.run(["docker-machine", "kill", machine.name], timeout=300)
                stopped = True
            except ShellCommandError as exc:
                logger.warning("Cannot kill machine %s: %s", machine.name, exc)

        if not stopped:
            instance_id = (machine.info or {}).get("Driver", {}).get("InstanceId")
            if instance_id:
                try:
                    await self.ec2.terminate_instance(instance_id)
                    stopped = True
                except CLOUD_ERRORS as exc:
                    logger.error("Cannot terminate machine %s through ec2: %s", machine.name, exc)
            else:
                logger.error("Cannot terminate machine %s, instance id unknown", machine.name)

        if not stopped:
            logger.critical(
                "Cannot stop, kill or terminate machine %s, manual intervention required",
                machine.name,
            )
            return False

        try:
            await self.run(["docker-machine", "rm", machine.name, "--force"])
        except ShellCommandError as exc:
            logger.warning("Cannot remove machine %s from docker-machine: %s", machine.name, exc)

        machine.status = MachineStatus.terminated.value
        machine.terminated_at = utcnow()
        await self.db.commit()
        if machine.eip:
            await self.free_elastic_ip(machine.eip["eid"])
        logger.info("Stopped and terminated machine %s", machine.name)
        return True

    async def cleanup_all(self, worker_type: str | None = None) -> int:
        machines = await self.get_machines(worker_type)
        if not machines:
            return 0
        logger.info("Attempting to clean up %s machines", len(machines))
        num_terminated = 0
        for machine in machines:
            if await self.cleanup(machine):
                num_terminated += 1
        return num_terminated

    async def get_api_endpoints(self, worker_type: str) -> list[str]:
        machines = await self.get_machines(worker_type, statuses=(MachineStatus.running.value,))
        return [self.service_url(machine) for machine in machines if machine.eip]
