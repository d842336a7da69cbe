"""
Command-line interface for podcatcher.

Usage:
    podcatcher add URL                  # Subscribe and run the initial refresh
    podcatcher list --sort name --desc  # List subscriptions
    podcatcher episodes 3 --downloaded only --count 20
    podcatcher refresh                  # Refresh every subscription
    podcatcher refresh 3 --output-json  # Refresh one subscription, JSON output
    podcatcher download --episode 42    # Download one episode
    podcatcher download --subscription 3  # Download every missing episode
    podcatcher delete-file 42           # Delete an episode's file
    podcatcher played 42 [--unset]      # Mark an episode played
    podcatcher bookmark 42 [--unset]    # Bookmark an episode
    podcatcher remove 3 [--keep-files | --files-only]
    podcatcher watch                    # Refresh periodically until interrupted
"""

import argparse
import json
import logging
import sys
from concurrent.futures import wait

from dateutil import parser as date_parser

from podcatcher.config import get_config
from podcatcher.exceptions import PodcatcherError
from podcatcher.models.entities import EpisodeFilter, FilterMode, SubscriptionSort
from podcatcher.service import PodcastService


def _open_service() -> PodcastService:
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return PodcastService.from_config(config)


def _report_downloads(futures) -> int:
    """Wait for download Futures and print their outcomes; returns failures."""
    wait(futures)
    failures = 0
    for future in futures:
        outcome = future.result()
        if outcome.succeeded:
            print(f"  downloaded episode {outcome.episode_id} -> {outcome.local_path}")
        elif outcome.cancelled:
            print(f"  cancelled episode {outcome.episode_id}")
        else:
            failures += 1
            print(f"  FAILED episode {outcome.episode_id}: {outcome.error}")
    return failures


def cmd_add(args, service):
    """Subscribe to a feed."""
    subscription = service.add_subscription(args.url, wait=True)
    episodes = service.list_episodes(subscription.id)
    print(f"Subscribed to '{subscription.title}' (id={subscription.id}, {len(episodes)} episodes)")


def cmd_list(args, service):
    """List subscriptions."""
    subscriptions = service.list_subscriptions(args.sort, descending=args.desc)
    if not subscriptions:
        print("No subscriptions.")
        return
    for sub in subscriptions:
        latest = sub.last_episode_date.strftime("%Y-%m-%d") if sub.last_episode_date else "-"
        print(f"{sub.id:>4}  {latest}  {sub.title or sub.feed_url}")


def cmd_episodes(args, service):
    """List a subscription's episodes."""
    episode_filter = EpisodeFilter(
        downloaded=FilterMode(args.downloaded),
        played=FilterMode(args.played),
        from_date=args.from_date,
        page=args.page,
        count=args.count,
    )
    episodes = service.list_episodes(args.subscription, episode_filter)
    if args.output_json:
        print(json.dumps([e.model_dump(mode="json") for e in episodes], indent=2, ensure_ascii=False))
        return
    for ep in episodes:
        flags = ("P" if ep.played else "-") + ("B" if ep.bookmarked else "-")
        print(f"{ep.id:>6}  {ep.publish_date:%Y-%m-%d}  {ep.status.value:<14} {flags}  {ep.title}")


def cmd_refresh(args, service):
    """Refresh one or all subscriptions; queued downloads finish before exit."""
    if args.subscription is None:
        results = service.refresh_all(wait=True)
    else:
        results = [service.refresh_one(args.subscription, wait=True)]

    if args.output_json:
        print(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
    else:
        for result in results:
            if result.ok:
                print(
                    f"[{result.subscription_id}] {result.feed_title}: "
                    f"{len(result.new_episode_ids)} new, {len(result.queued_episode_ids)} queued"
                )
            else:
                print(f"ERROR: [{result.subscription_id}] {result.error}")

    if any(not r.ok for r in results):
        sys.exit(1)


def cmd_download(args, service):
    """Download one episode or every missing episode of a subscription."""
    if args.episode is not None:
        future = service.enqueue_one(args.episode)
        futures = [future] if future is not None else []
        if not futures:
            print(f"Episode {args.episode} is already queued or downloaded.")
    else:
        futures = service.enqueue_all_undownloaded(args.subscription)
        print(f"Queued {len(futures)} episode(s)")

    if _report_downloads(futures):
        sys.exit(1)


def cmd_delete_file(args, service):
    """Delete an episode's downloaded file."""
    episode = service.delete_downloaded_file(args.episode)
    print(f"Episode {episode.id} is now {episode.status.value}")


def cmd_played(args, service):
    """Mark an episode played or unplayed."""
    service.set_played(args.episode, not args.unset)


def cmd_bookmark(args, service):
    """Bookmark or un-bookmark an episode."""
    service.set_bookmarked(args.episode, not args.unset)


def cmd_remove(args, service):
    """Remove a subscription, or only its downloaded files."""
    if args.files_only:
        count = service.delete_subscription_files(args.subscription)
        print(f"Deleted downloads of {count} episode(s)")
    else:
        service.delete_subscription(args.subscription, delete_files=not args.keep_files)
        print(f"Removed subscription {args.subscription}")


def cmd_watch(args, service):
    """Refresh on an interval until interrupted."""
    interval = service.refresh_interval_minutes if args.interval is None else args.interval
    if interval <= 0:
        print("ERROR: Refresh interval must be greater than 0 minutes.")
        sys.exit(1)
    service.start_periodic_refresh(interval)
    print(f"Watching for new episodes every {interval:g} minutes (Ctrl+C to stop)...")
    try:
        service.coordinator.wait_for_shutdown()
    except KeyboardInterrupt:
        print("\nStopping.")


def main():
    parser = argparse.ArgumentParser(
        prog="podcatcher",
        description="podcatcher -- subscribe to podcasts and download their episodes",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # add
    sub_add = subparsers.add_parser("add", help="Subscribe to a feed")
    sub_add.add_argument("url", help="Feed URL")
    sub_add.set_defaults(func=cmd_add)

    # list
    sub_list = subparsers.add_parser("list", help="List subscriptions")
    sub_list.add_argument(
        "--sort",
        choices=[s.value for s in SubscriptionSort],
        default=SubscriptionSort.DATE_ADDED.value,
        help="Sort key (default: dateadded)",
    )
    sub_list.add_argument("--desc", action="store_true", default=False, help="Descending order")
    sub_list.set_defaults(func=cmd_list)

    # episodes
    modes = [m.value for m in FilterMode]
    sub_episodes = subparsers.add_parser("episodes", help="List a subscription's episodes")
    sub_episodes.add_argument("subscription", type=int, help="Subscription id")
    sub_episodes.add_argument("--downloaded", choices=modes, default="any")
    sub_episodes.add_argument("--played", choices=modes, default="any")
    sub_episodes.add_argument("--from-date", type=date_parser.parse, default=None, help="Only episodes published on or after (ISO date)")
    sub_episodes.add_argument("--page", type=int, default=1)
    sub_episodes.add_argument("--count", type=int, default=None)
    sub_episodes.add_argument(
        "--output-json",
        action="store_true",
        default=False,
        help="Output result as JSON",
    )
    sub_episodes.set_defaults(func=cmd_episodes)

    # refresh
    sub_refresh = subparsers.add_parser("refresh", help="Refresh subscriptions")
    sub_refresh.add_argument("subscription", type=int, nargs="?", default=None, help="Subscription id (default: all)")
    sub_refresh.add_argument(
        "--output-json",
        action="store_true",
        default=False,
        help="Output result as JSON (for CI/automation)",
    )
    sub_refresh.set_defaults(func=cmd_refresh)

    # download
    sub_download = subparsers.add_parser("download", help="Download episodes")
    target = sub_download.add_mutually_exclusive_group(required=True)
    target.add_argument("--episode", type=int, default=None, help="Episode id")
    target.add_argument("--subscription", type=int, default=None, help="Download every missing episode")
    sub_download.set_defaults(func=cmd_download)

    # delete-file
    sub_delete_file = subparsers.add_parser("delete-file", help="Delete an episode's downloaded file")
    sub_delete_file.add_argument("episode", type=int, help="Episode id")
    sub_delete_file.set_defaults(func=cmd_delete_file)

    # played / bookmark
    for name, func, help_text in (
        ("played", cmd_played, "Mark an episode played"),
        ("bookmark", cmd_bookmark, "Bookmark an episode"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("episode", type=int, help="Episode id")
        sub.add_argument("--unset", action="store_true", default=False, help="Clear the flag")
        sub.set_defaults(func=func)

    # remove
    sub_remove = subparsers.add_parser("remove", help="Remove a subscription")
    sub_remove.add_argument("subscription", type=int, help="Subscription id")
    mode = sub_remove.add_mutually_exclusive_group()
    mode.add_argument("--keep-files", action="store_true", default=False, help="Keep downloaded files")
    mode.add_argument(
        "--files-only",
        action="store_true",
        default=False,
        help="Delete downloaded files but keep the subscription",
    )
    sub_remove.set_defaults(func=cmd_remove)

    # watch
    sub_watch = subparsers.add_parser("watch", help="Refresh periodically until interrupted")
    sub_watch.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Minutes between refreshes (default: PODCATCHER_REFRESH_INTERVAL_MINUTES)",
    )
    sub_watch.set_defaults(func=cmd_watch)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        with _open_service() as service:
            args.func(args, service)
    except (PodcatcherError, ValueError) as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
