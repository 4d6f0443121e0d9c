import argparse
import json
import sys
from pathlib import Path

from ebs_publisher.config import settings
from ebs_publisher.domain.models import ApplianceIdentity, PreviousStage
from ebs_publisher.exceptions import PreconditionError, PublishError
from ebs_publisher.logging import LoggerFactory, setup_logging
from ebs_publisher.services.publisher import REQUIRED_PREVIOUS_STAGE, EbsPublisher


def load_appliance(path: Path) -> ApplianceIdentity:
    """Read an appliance definition from a JSON file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return ApplianceIdentity.from_dict(data)
    except (OSError, json.JSONDecodeError) as error:
        raise PreconditionError(
            f"Could not read appliance definition {path}: {error}."
        ) from error
    except (KeyError, TypeError, ValueError) as error:
        raise PreconditionError(
            f"Invalid appliance definition {path}: {error}.",
            "Required keys: name, os.name, os.version, hardware.partitions.",
        ) from error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Publish an EC2 appliance disk as an EBS-backed AMI"
    )
    parser.add_argument(
        "--appliance", required=True, type=Path, help="Appliance definition (JSON)"
    )
    parser.add_argument(
        "--disk", required=True, type=Path, help="Disk produced by the ec2 conversion stage"
    )
    parser.add_argument(
        "--previous-stage",
        default=REQUIRED_PREVIOUS_STAGE,
        help="Name of the stage that produced --disk (default: %(default)s)",
    )
    parser.add_argument(
        "--settings", type=Path, default=None, help="Settings file (JSON)"
    )
    parser.add_argument(
        "--snapshot",
        action="store_true",
        default=None,
        help="Publish under the next free -SNAPSHOT-<n> name",
    )
    parser.add_argument(
        "--availability-zone", default=None, help="Override the configured zone"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--trace", action="store_true", help="Enable trace logging")
    parser.add_argument("--log-dir", type=Path, default=None, help="Log directory")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        config = settings.load_config(
            args.settings,
            snapshot=args.snapshot,
            availability_zone=args.availability_zone,
        )
        appliance = load_appliance(args.appliance)
        previous_stage = PreviousStage(args.previous_stage, args.disk)
        handle = EbsPublisher(config, appliance, previous_stage).publish()
    except PublishError as error:
        log.error(str(error))
        return 1
    finally:
        log.complete()

    print(f"{handle.name}\t{handle.image_id}\t{handle.region}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
