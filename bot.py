#!/usr/bin/env python3
"""
Discord bot that turns tip.cc tips into donation-draw entries, keeps donor
totals and tier roles up to date, and lets admins run weighted prize draws.

Configuration is read from the environment (see donor_draws/config.py); only
DISCORD_TOKEN is required. The bot needs the Message Content and Server
Members intents enabled in the developer portal.

Donors enter a specific draw with:
    $tip @recipient <amount> <coin> #drawid
Without a #drawid the cheapest draw whose range holds the donation is used.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import discord
from discord import app_commands
from discord.ext import tasks

from donor_draws import registry
from donor_draws.allocator import ACHIEVEMENT_INFO, ManualStatus, assign_entries_to_many
from donor_draws.config import load_config, setup_logging
from donor_draws.correlator import TipCorrelator
from donor_draws.errors import DonorDrawsError, StoreUnavailable
from donor_draws.models import (
    DEFAULT_FEATURE_TOGGLES,
    UNBOUNDED_AMOUNT,
    Document,
    RoleRecipient,
    UserRecipient,
    default_donor_tiers,
)
from donor_draws.prices import PriceResolver
from donor_draws.service import DonationReceipt, DonationService
from donor_draws.store import DocumentStore
from donor_draws.tiers import reconcile_member_roles, tier_for
from donor_draws.tipparse import is_tip_error, parse_confirmation
from donor_draws.winner import select_winner

log = logging.getLogger("donor-draws")

BATCH_CONFIRM_THRESHOLD = 50

CATEGORY_CHOICES = [app_commands.Choice(name=v, value=k) for k, v in registry.DRAW_CATEGORIES.items()]
TIER_CHOICES = [app_commands.Choice(name=t.name, value=t.key) for t in default_donor_tiers()]


def _money(x: float) -> str:
    return f"${x:,.2f}"


def _range_text(min_amount: float, max_amount: float) -> str:
    if max_amount >= UNBOUNDED_AMOUNT:
        return f"{_money(min_amount)}+"
    return f"{_money(min_amount)} - {_money(max_amount)}"


def _medal(index: int) -> str:
    return {0: "🥇", 1: "🥈", 2: "🥉"}.get(index, f"{index + 1}.")


class DrawsCommandTree(app_commands.CommandTree):
    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if self.client._guild_allowed(interaction.guild_id):
            return True
        await interaction.response.send_message("This bot is not configured for this server.", ephemeral=True)
        return False


class DonorDrawsBot(discord.Client):
    def __init__(self, *, intents: discord.Intents, cfg: dict):
        super().__init__(intents=intents)
        self.tree = DrawsCommandTree(self)
        self.cfg = cfg
        self.store = DocumentStore(Path(cfg["data_dir"]), max_backups=cfg["max_backups"])
        self.resolver = PriceResolver(
            coinmarketcap_key=cfg["coinmarketcap_key"],
            coingecko_pro_key=cfg["coingecko_pro_key"],
            cache_seconds=cfg["price_cache_seconds"],
            timeout=cfg["http_timeout"],
            overrides=cfg["price_overrides"],
        )
        self.service = DonationService(self.store, self.resolver, TipCorrelator())
        self.server_ids = set(cfg["server_ids"])
        self._synced_on_ready = False

    # --- helpers ---

    def _guild_allowed(self, guild_id: Optional[int]) -> bool:
        if guild_id is None:
            return False
        return not self.server_ids or str(guild_id) in self.server_ids

    def _is_admin(self, interaction: discord.Interaction) -> bool:
        user = interaction.user
        if self.cfg["owner_id"] and str(user.id) == self.cfg["owner_id"]:
            return True
        if not isinstance(user, discord.Member):
            return False
        if user.guild_permissions.manage_guild:
            return True
        admin_role = self.store.load(interaction.guild_id).config.admin_role_id
        return bool(admin_role) and any(str(r.id) == admin_role for r in user.roles)

    async def _resolve_channel(self, channel_id) -> Optional[discord.abc.Messageable]:
        if not channel_id:
            return None
        ch = self.get_channel(int(channel_id))
        if ch is None:
            try:
                ch = await self.fetch_channel(int(channel_id))
            except Exception as e:
                log.warning("Unable to fetch channel %s: %s", channel_id, e)
                return None
        return ch if isinstance(ch, (discord.TextChannel, discord.Thread)) else None

    async def _alert(self, guild_id, text: str):
        """Post to the guild's log channel, falling back to LOG_CHANNEL_ID."""
        try:
            channel_id = self.store.load(guild_id).config.log_channel_id or self.cfg["log_channel_id"]
        except StoreUnavailable:
            channel_id = self.cfg["log_channel_id"]
        ch = await self._resolve_channel(channel_id)
        if ch is None:
            return
        try:
            await ch.send(f"⚠️ {text}")
        except Exception as e:
            log.warning("Failed to post alert to %s: %s", channel_id, e)

    async def _save(self, guild_id, doc: Document) -> bool:
        saved = self.store.save(guild_id, doc)
        if not saved:
            await self._alert(guild_id, "Saving the donation database failed; the last change may be lost.")
        return saved

    @staticmethod
    def _save_note(saved: bool) -> str:
        return "" if saved else "\n⚠️ The change could not be saved to disk."

    async def _member(self, guild: discord.Guild, user_id) -> Optional[discord.Member]:
        member = guild.get_member(int(user_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(user_id))
            except Exception as e:
                log.debug("Could not fetch member %s in %s: %s", user_id, guild.id, e)
                return None
        return member

    async def _sync_tier_roles(self, guild: discord.Guild, user_id, total: float, tiers) -> None:
        member = await self._member(guild, user_id)
        if member is None:
            return
        tier = tier_for(total, tiers)
        change = await reconcile_member_roles(member, tier, tiers)
        if change.failures:
            await self._alert(guild.id, f"Could not update donor roles for <@{user_id}> (check role hierarchy).")

    # --- setup ---

    async def setup_hook(self):
        self._schedule_loop.change_interval(seconds=self.cfg["scheduler_interval"])
        self._schedule_loop.start()
        log.info("Started scheduler loop (every %ss)", self.cfg["scheduler_interval"])

        admin_only = app_commands.check(self._is_admin)

        @self.tree.error
        async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
            if isinstance(error, app_commands.CheckFailure):
                msg = "You do not have permission to use this command."
            else:
                log.error("Command %s failed: %s", getattr(interaction.command, "name", "?"), error)
                msg = "There was an error while executing this command!"
            try:
                if interaction.response.is_done():
                    await interaction.followup.send(msg, ephemeral=True)
                else:
                    await interaction.response.send_message(msg, ephemeral=True)
            except Exception as e:
                log.warning("Could not report command error: %s", e)

        # --- admin: configuration ---

        @self.tree.command(name="setup", description="Set the admin role and bot channels")
        @app_commands.describe(
            admin_role="Role allowed to manage draws",
            notification_channel="Channel for draw announcements",
            log_channel="Channel for bot alerts",
            vip_role="Role that may enter VIP-only draws",
        )
        @app_commands.checks.has_permissions(manage_guild=True)
        async def setup_cmd(
            interaction: discord.Interaction,
            admin_role: discord.Role,
            notification_channel: Optional[discord.TextChannel] = None,
            log_channel: Optional[discord.TextChannel] = None,
            vip_role: Optional[discord.Role] = None,
        ):
            async with self.store.locked(interaction.guild_id) as doc:
                registry.set_admin_role(doc, admin_role.id)
                registry.set_channels(
                    doc,
                    notification_channel.id if notification_channel else None,
                    log_channel.id if log_channel else None,
                )
                if vip_role:
                    registry.set_vip_role(doc, vip_role.id)
                saved = await self._save(interaction.guild_id, doc)
            await interaction.response.send_message(
                f"✅ Admin role set to {admin_role.mention}."
                + (f" Announcements go to {notification_channel.mention}." if notification_channel else "")
                + (f" Alerts go to {log_channel.mention}." if log_channel else "")
                + self._save_note(saved),
                ephemeral=True,
            )

        @self.tree.command(name="add_cryptocurrency", description="Add a cryptocurrency to the accepted list")
        @admin_only
        async def add_cryptocurrency(interaction: discord.Interaction, symbol: str):
            async with self.store.locked(interaction.guild_id) as doc:
                added = registry.add_currency(doc, symbol)
                saved = await self._save(interaction.guild_id, doc) if added else True
            text = f"✅ Added {symbol.upper()} to accepted coins." if added else f"❌ {symbol.upper()} is already accepted."
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="remove_cryptocurrency", description="Remove a cryptocurrency from the accepted list")
        @admin_only
        async def remove_cryptocurrency(interaction: discord.Interaction, symbol: str):
            async with self.store.locked(interaction.guild_id) as doc:
                removed = registry.remove_currency(doc, symbol)
                saved = await self._save(interaction.guild_id, doc) if removed else True
            text = f"✅ Removed {symbol.upper()}." if removed else f"❌ {symbol.upper()} is not in the accepted list."
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="add_recipient", description="Allow a user or role to receive donations")
        @admin_only
        async def add_recipient(interaction: discord.Interaction, recipient: Union[discord.Member, discord.Role]):
            if isinstance(recipient, discord.Role):
                entry = RoleRecipient(str(recipient.id), recipient.name)
            else:
                entry = UserRecipient(str(recipient.id), recipient.name)
            async with self.store.locked(interaction.guild_id) as doc:
                added = registry.add_recipient(doc, entry)
                saved = await self._save(interaction.guild_id, doc) if added else True
            text = (f"✅ Added {recipient.mention} as an allowed donation recipient." if added
                    else "❌ This recipient is already in the allowed list.")
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="remove_recipient", description="Stop counting donations to a user or role")
        @admin_only
        async def remove_recipient(interaction: discord.Interaction, recipient: Union[discord.Member, discord.Role]):
            async with self.store.locked(interaction.guild_id) as doc:
                removed = registry.remove_recipient(doc, str(recipient.id))
                saved = await self._save(interaction.guild_id, doc) if removed else True
            text = (f"✅ Removed {recipient.mention} from allowed recipients." if removed
                    else "❌ This recipient is not in the allowed list.")
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="blacklist", description="Keep a user out of automatic draw entries")
        @app_commands.choices(action=[
            app_commands.Choice(name="add", value="add"),
            app_commands.Choice(name="remove", value="remove"),
            app_commands.Choice(name="list", value="list"),
        ])
        @admin_only
        async def blacklist(interaction: discord.Interaction, action: str, user: Optional[discord.Member] = None):
            if action == "list":
                users = self.store.load(interaction.guild_id).config.global_blacklist.users
                text = "\n".join(f"• <@{u}>" for u in users) or "No users are blacklisted."
                await interaction.response.send_message(text, ephemeral=True)
                return
            if user is None:
                await interaction.response.send_message("❌ Please specify a user.", ephemeral=True)
                return
            async with self.store.locked(interaction.guild_id) as doc:
                if action == "add":
                    changed = registry.blacklist_user(doc, user.id)
                else:
                    changed = registry.unblacklist_user(doc, user.id)
                saved = await self._save(interaction.guild_id, doc) if changed else True
            if not changed:
                text = f"❌ {user.mention} is {'already' if action == 'add' else 'not'} blacklisted."
            else:
                text = f"✅ {user.mention} {'added to' if action == 'add' else 'removed from'} the blacklist."
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="bind_tier_role", description="Link a donor tier to a Discord role")
        @app_commands.choices(tier=TIER_CHOICES)
        @admin_only
        async def bind_tier_role(interaction: discord.Interaction, tier: str, role: Optional[discord.Role] = None):
            async with self.store.locked(interaction.guild_id) as doc:
                found = registry.bind_tier_role(doc, tier, role.id if role else None)
                saved = await self._save(interaction.guild_id, doc) if found else True
            if not found:
                text = f"❌ Unknown tier {tier}."
            elif role:
                text = f"✅ Tier {tier} now grants {role.mention}."
            else:
                text = f"✅ Tier {tier} no longer grants a role."
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="feature", description="Turn a bot feature on or off")
        @app_commands.choices(name=[app_commands.Choice(name=k, value=k) for k in DEFAULT_FEATURE_TOGGLES])
        @admin_only
        async def feature(interaction: discord.Interaction, name: str, enabled: bool):
            async with self.store.locked(interaction.guild_id) as doc:
                registry.set_feature(doc, name, enabled)
                saved = await self._save(interaction.guild_id, doc)
            await interaction.response.send_message(
                f"✅ {name} is now {'on' if enabled else 'off'}." + self._save_note(saved), ephemeral=True,
            )

        @self.tree.command(name="backup", description="Create, list or restore database backups")
        @app_commands.describe(file="Backup file name to restore (see the list action)")
        @app_commands.choices(action=[
            app_commands.Choice(name="create", value="create"),
            app_commands.Choice(name="list", value="list"),
            app_commands.Choice(name="restore", value="restore"),
        ])
        @admin_only
        async def backup(interaction: discord.Interaction, action: str, file: Optional[str] = None):
            gid = interaction.guild_id
            if action == "create":
                async with self.store.locked(gid):
                    ok = self.store.create_backup(gid)
                text = "✅ Backup created." if ok else "❌ Backup failed."
            elif action == "restore":
                if not file:
                    await interaction.response.send_message("❌ Please give the backup file to restore.", ephemeral=True)
                    return
                async with self.store.locked(gid):
                    ok = self.store.restore_backup(gid, file)
                text = f"✅ Restored `{file}`." if ok else f"❌ Could not restore `{file}`."
            else:
                rows = self.store.list_backups(gid)[:10]
                text = "\n".join(
                    f"• `{r['file']}` ({datetime.fromtimestamp(r['timestamp'], tz=timezone.utc):%Y-%m-%d %H:%M UTC})"
                    for r in rows
                ) or "No backups yet."
            await interaction.response.send_message(text, ephemeral=True)

        # --- admin: draws ---

        @self.tree.command(name="create_draw", description="Create a new donation draw")
        @app_commands.describe(
            id="Unique ID for the draw (no spaces)",
            max_amount="Maximum USD donation amount (0 for no limit)",
            reward='Reward description (e.g. "100 USDT")',
        )
        @app_commands.choices(category=CATEGORY_CHOICES)
        @admin_only
        async def create_draw(
            interaction: discord.Interaction,
            id: str,
            name: str,
            min_amount: float,
            max_amount: float,
            reward: str,
            max_entries: int,
            category: Optional[str] = None,
        ):
            try:
                async with self.store.locked(interaction.guild_id) as doc:
                    draw = registry.create_draw(
                        doc, id, name, min_amount, max_amount, reward, max_entries, category=category or "monthly",
                    )
                    saved = await self._save(interaction.guild_id, doc)
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            await interaction.response.send_message(
                f"✅ Created draw **{draw.name}** (`#{draw.id}`): {_range_text(draw.min_amount, draw.max_amount)}, "
                f"{draw.max_entries} entries, reward {draw.reward}." + self._save_note(saved),
                ephemeral=True,
            )

        @self.tree.command(name="edit_draw", description="Edit an existing donation draw")
        @app_commands.choices(category=CATEGORY_CHOICES)
        @admin_only
        async def edit_draw(
            interaction: discord.Interaction,
            id: str,
            name: Optional[str] = None,
            min_amount: Optional[float] = None,
            max_amount: Optional[float] = None,
            reward: Optional[str] = None,
            max_entries: Optional[int] = None,
            active: Optional[bool] = None,
            manual_only: Optional[bool] = None,
            vip_only: Optional[bool] = None,
            category: Optional[str] = None,
        ):
            try:
                async with self.store.locked(interaction.guild_id) as doc:
                    changed = registry.edit_draw(
                        doc, id, name=name, min_amount=min_amount, max_amount=max_amount, reward=reward,
                        max_entries=max_entries, active=active, manual_entries_only=manual_only,
                        vip_only=vip_only, category=category,
                    )
                    saved = await self._save(interaction.guild_id, doc) if changed else True
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            text = f"✅ Updated `#{id}`: {', '.join(changed)}" if changed else "❌ No changes specified."
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

        @self.tree.command(name="reset_draw", description="Reset all entries for a donation draw")
        @admin_only
        async def reset_draw(interaction: discord.Interaction, draw_id: str):
            try:
                async with self.store.locked(interaction.guild_id) as doc:
                    removed = registry.reset_draw(doc, draw_id)
                    saved = await self._save(interaction.guild_id, doc)
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            await interaction.response.send_message(
                f"✅ Reset `#{draw_id}` ({removed} entries removed)." + self._save_note(saved), ephemeral=True,
            )

        @self.tree.command(name="schedule_draw", description="Schedule an automatic winner selection")
        @app_commands.describe(
            when="UTC time as YYYY-MM-DD HH:MM",
            in_minutes="Alternatively, minutes from now",
        )
        @admin_only
        async def schedule_draw(
            interaction: discord.Interaction,
            draw_id: str,
            when: Optional[str] = None,
            in_minutes: Optional[int] = None,
        ):
            if when:
                try:
                    fire_at = datetime.strptime(when.strip(), "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc).timestamp()
                except ValueError:
                    await interaction.response.send_message("❌ Use the format YYYY-MM-DD HH:MM (UTC).", ephemeral=True)
                    return
            elif in_minutes and in_minutes > 0:
                fire_at = time.time() + in_minutes * 60
            else:
                await interaction.response.send_message("❌ Give either `when` or a positive `in_minutes`.", ephemeral=True)
                return
            if fire_at <= time.time():
                await interaction.response.send_message("❌ That time is in the past.", ephemeral=True)
                return
            try:
                async with self.store.locked(interaction.guild_id) as doc:
                    draw = registry.schedule_draw(doc, draw_id, fire_at)
                    saved = await self._save(interaction.guild_id, doc)
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            await interaction.response.send_message(
                f"⏰ **{draw.name}** will be drawn at {draw.draw_time_formatted}." + self._save_note(saved),
                ephemeral=True,
            )

        @self.tree.command(name="cancel_draw_schedule", description="Cancel a scheduled draw")
        @admin_only
        async def cancel_draw_schedule(interaction: discord.Interaction, draw_id: str):
            try:
                async with self.store.locked(interaction.guild_id) as doc:
                    draw = registry.cancel_schedule(doc, draw_id)
                    saved = await self._save(interaction.guild_id, doc)
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            await interaction.response.send_message(
                f"✅ Schedule cancelled for **{draw.name}**." + self._save_note(saved), ephemeral=True,
            )

        @self.tree.command(name="select_winner", description="Pick a winner from a donation draw")
        @admin_only
        async def select_winner_cmd(interaction: discord.Interaction, draw_id: str):
            try:
                async with self.store.locked(interaction.guild_id) as doc:
                    record = select_winner(doc, draw_id)
                    saved = await self._save(interaction.guild_id, doc)
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            await interaction.response.send_message(self._winner_text(record) + self._save_note(saved))

        @self.tree.command(name="assign_entries", description="Manually assign entries to a user or role")
        @app_commands.describe(
            donation_amount="USD amount to add to each user's total",
            confirm_batch=f"Required for roles with more than {BATCH_CONFIRM_THRESHOLD} members",
        )
        @admin_only
        async def assign_entries(
            interaction: discord.Interaction,
            target: Union[discord.Member, discord.Role],
            draw_id: str,
            entries: int,
            donation_amount: Optional[float] = None,
            confirm_batch: bool = False,
        ):
            amount = donation_amount or 0.0
            if entries < 1 or amount < 0:
                await interaction.response.send_message("❌ Entries must be positive and amounts non-negative.", ephemeral=True)
                return
            if isinstance(target, discord.Role):
                members = [m for m in target.members if not m.bot]
                if not members:
                    await interaction.response.send_message("❌ No members found with this role.", ephemeral=True)
                    return
                if len(members) > BATCH_CONFIRM_THRESHOLD and not confirm_batch:
                    await interaction.response.send_message(
                        f"⚠️ This role has {len(members)} members ({entries * len(members)} entries). "
                        "Use the confirm_batch option if you're sure.",
                        ephemeral=True,
                    )
                    return
            else:
                members = [target]

            async with self.store.locked(interaction.guild_id) as doc:
                results = assign_entries_to_many(doc, [(str(m.id), m.name) for m in members], draw_id, entries, amount)
                ok = [r for r in results if r.ok]
                saved = await self._save(interaction.guild_id, doc) if ok else True
                tiers = list(doc.config.donor_tiers)
                totals = {m.id: doc.users[str(m.id)].total_donated for m in members if str(m.id) in doc.users}

            last = results[-1] if results else None
            if not ok:
                reason = {
                    ManualStatus.NOT_FOUND: f'Draw with ID "{draw_id}" not found.',
                    ManualStatus.INACTIVE: f'Draw "{draw_id}" is not active.',
                    ManualStatus.FULL: f'Draw "{draw_id}" is full.',
                }.get(last.status if last else None, "Invalid entry assignment.")
                await interaction.response.send_message(f"❌ {reason}", ephemeral=True)
                return
            added = sum(r.entries_added for r in ok)
            text = f"✅ Assigned {added} entries to {len(ok)} user(s) in `#{draw_id}`."
            if any(r.clamped for r in ok) or len(ok) < len(members):
                text += " The draw reached capacity, so some entries were not assigned."
            await interaction.response.send_message(text + self._save_note(saved), ephemeral=True)

            if amount > 0 and interaction.guild:
                for m in members[: len(ok)]:
                    if m.id in totals:
                        await self._sync_tier_roles(interaction.guild, m.id, totals[m.id], tiers)

        @self.tree.command(name="reset_leaderboard", description="Zero all donor totals and entries")
        @app_commands.describe(confirm='Type "confirm" to reset the leaderboard')
        @admin_only
        async def reset_leaderboard(interaction: discord.Interaction, confirm: str):
            if confirm != "confirm":
                await interaction.response.send_message('❌ You must type "confirm" to reset the leaderboard.', ephemeral=True)
                return
            gid = interaction.guild_id
            async with self.store.locked(gid) as doc:
                if not self.store.create_backup(gid):
                    await interaction.response.send_message("❌ Could not take a backup; leaderboard not reset.", ephemeral=True)
                    return
                count = registry.reset_leaderboard(doc)
                saved = await self._save(gid, doc)
            await interaction.response.send_message(
                f"✅ Leaderboard reset for {count} users. A backup was taken first." + self._save_note(saved),
                ephemeral=True,
            )

        # --- public ---

        @self.tree.command(name="draws", description="Show available donation draws")
        async def draws_cmd(interaction: discord.Interaction):
            doc = self.store.load(interaction.guild_id)
            draws = registry.active_draws(doc)
            if not draws:
                await interaction.response.send_message("There are no active draws at the moment.")
                return
            embed = discord.Embed(title="🎁 Available Donation Draws", color=0x4CAF50)
            for d in draws:
                lines = [
                    f"Donation range: {_range_text(d.min_amount, d.max_amount)}",
                    f"Entries: 1 per {_money(d.min_amount)} donated",
                    f"Total entries: {d.total_entries}/{d.max_entries}",
                    f"Reward: {d.reward}",
                ]
                if d.draw_time_formatted:
                    lines.append(f"⏰ Draw at {d.draw_time_formatted}")
                if d.manual_entries_only:
                    lines.append("🔒 Manual entries only")
                if d.vip_only:
                    lines.append("⭐ VIP donors only")
                embed.add_field(name=f"{d.name} (#{d.id})", value="\n".join(lines), inline=False)
            await interaction.response.send_message(embed=embed)

        @self.tree.command(name="draw_ids", description="Show draw IDs to use when donating")
        async def draw_ids(interaction: discord.Interaction):
            draws = registry.active_draws(self.store.load(interaction.guild_id))
            if not draws:
                await interaction.response.send_message("There are no active draws at the moment.")
                return
            lines = ["Use these IDs when donating: `$tip @recipient amount coin #drawID`"]
            lines += [f"• `#{d.id}` {d.name}: min {_money(d.min_amount)}, reward {d.reward}" for d in draws]
            await interaction.response.send_message("\n".join(lines))

        @self.tree.command(name="entries", description="Check your donation draw entries")
        async def entries_cmd(interaction: discord.Interaction):
            doc = self.store.load(interaction.guild_id)
            account = doc.users.get(str(interaction.user.id))
            if not account or not account.entries:
                await interaction.response.send_message("You don't have any entries in any draws.", ephemeral=True)
                return
            lines = []
            for draw_id, count in account.entries.items():
                draw = doc.draws.get(draw_id)
                if draw is None:
                    continue
                total = draw.total_entries
                odds = count / total * 100 if total else 0.0
                status = "" if draw.active else " (inactive)"
                lines.append(f"• **{draw.name}**{status}: {count} entries, {odds:.2f}% odds, reward {draw.reward}")
            lines.append(f"Total donated: {_money(account.total_donated)}")
            await interaction.response.send_message("\n".join(lines), ephemeral=True)

        @self.tree.command(name="leaderboard", description="Show top donors")
        async def leaderboard(interaction: discord.Interaction, limit: Optional[int] = 10):
            rows = registry.top_donors(self.store.load(interaction.guild_id), max(1, min(limit or 10, 25)))
            if not rows:
                await interaction.response.send_message("No donations have been made yet.")
                return
            text = "\n".join(
                f"{_medal(i)} {acct.username} - {_money(acct.total_donated)}" for i, (_uid, acct) in enumerate(rows)
            )
            await interaction.response.send_message(f"🏆 **Top Donors**\n{text}")

        @self.tree.command(name="entry_leaderboard", description="Show users with the most entries in a draw")
        async def entry_leaderboard(interaction: discord.Interaction, draw_id: str, limit: Optional[int] = 10):
            doc = self.store.load(interaction.guild_id)
            try:
                rows = registry.entry_leaderboard(doc, draw_id, max(1, min(limit or 10, 25)))
            except DonorDrawsError as e:
                await interaction.response.send_message(f"❌ {e}", ephemeral=True)
                return
            if not rows:
                await interaction.response.send_message(f"No entries found for draw `#{draw_id}`.")
                return
            text = "\n".join(
                f"{_medal(i)} {doc.users[uid].username if uid in doc.users else 'Unknown User'} - {count} entries"
                for i, (uid, count) in enumerate(rows)
            )
            await interaction.response.send_message(f"🎯 **Entry Leaderboard: #{draw_id}**\n{text}")

        @self.tree.command(name="accepted_coins", description="Show the accepted cryptocurrencies")
        async def accepted_coins(interaction: discord.Interaction):
            coins = self.store.load(interaction.guild_id).config.accepted_currencies
            await interaction.response.send_message("💱 Accepted coins: " + (", ".join(coins) or "none"))

        @self.tree.command(name="donor_roles", description="Show donor tiers and their requirements")
        async def donor_roles(interaction: discord.Interaction):
            tiers = sorted(self.store.load(interaction.guild_id).config.donor_tiers, key=lambda t: t.min_amount)
            lines = []
            for t in tiers:
                span = f"{_money(t.min_amount)}+" if t.max_amount is None else f"{_money(t.min_amount)} - {_money(t.max_amount)}"
                role = f" <@&{t.role_id}>" if t.role_id else ""
                lines.append(f"• **{t.name}**{role}: {span} lifetime")
            await interaction.response.send_message("\n".join(lines))

        @self.tree.command(name="achievements", description="List achievements or view a member's")
        @app_commands.choices(action=[
            app_commands.Choice(name="list", value="list"),
            app_commands.Choice(name="view", value="view"),
        ])
        async def achievements(interaction: discord.Interaction, action: str, user: Optional[discord.Member] = None):
            if action == "list":
                lines = [f"• **{title}**: {desc}" for title, desc in ACHIEVEMENT_INFO.values()]
                await interaction.response.send_message("🏅 **Achievements**\n" + "\n".join(lines), ephemeral=True)
                return
            target = user or interaction.user
            account = self.store.load(interaction.guild_id).users.get(str(target.id))
            earned = [ACHIEVEMENT_INFO.get(k, (k, ""))[0] for k in (account.achievements if account else [])]
            text = "\n".join(f"• {t}" for t in earned) or "No achievements yet."
            await interaction.response.send_message(
                f"🏅 **{target.display_name}** ({len(earned)}/{len(ACHIEVEMENT_INFO)})\n{text}", ephemeral=True,
            )

        @self.tree.command(name="profile", description="Show donation totals, streaks and wins")
        async def profile(interaction: discord.Interaction, user: Optional[discord.Member] = None):
            target = user or interaction.user
            doc = self.store.load(interaction.guild_id)
            account = doc.users.get(str(target.id))
            if account is None or not (account.total_donated or account.wins or account.entries):
                await interaction.response.send_message(f"{target.display_name} has not donated yet.", ephemeral=True)
                return
            tier = tier_for(account.total_donated, doc.config.donor_tiers)
            lines = [
                f"💰 Total donated: {_money(account.total_donated)}",
                f"🎖️ Tier: {tier.name if tier else 'none'}",
                f"🏆 Wins: {account.wins}",
                f"🎟️ Entries: {sum(account.entries.values())} across {len(account.entries)} draw(s)",
                f"🏅 Achievements: {len(account.achievements)}/{len(ACHIEVEMENT_INFO)}",
            ]
            if doc.config.feature("donation_streaks"):
                lines.append(f"🔥 Streak: {account.current_streak} day(s), best {account.longest_streak}")
            recent = account.donations[-5:]
            if recent:
                lines.append("**Recent donations**")
                lines += [
                    f"• {_money(d.amount)} in {d.currency or '?'} "
                    f"({datetime.fromtimestamp(d.timestamp, tz=timezone.utc):%Y-%m-%d})"
                    for d in reversed(recent)
                ]
            await interaction.response.send_message(
                f"👤 **{account.username}**\n" + "\n".join(lines), ephemeral=True,
            )

        @self.tree.command(name="history", description="Show recent draw winners")
        async def history(interaction: discord.Interaction, limit: Optional[int] = 10):
            rows = registry.recent_winners(self.store.load(interaction.guild_id), max(1, min(limit or 10, 25)))
            if not rows:
                await interaction.response.send_message("No draws have been held yet.")
                return
            text = "\n".join(
                f"• {datetime.fromtimestamp(r.timestamp, tz=timezone.utc):%Y-%m-%d} **{r.draw_name}**: "
                f"<@{r.winner_id}> won {r.reward} ({r.winner_entries}/{r.total_entries} entries)"
                for r in rows
            )
            await interaction.response.send_message(f"📜 **Recent Winners**\n{text}")

        @self.tree.command(name="stats", description="Show server donation statistics")
        async def stats(interaction: discord.Interaction):
            s = registry.guild_stats(self.store.load(interaction.guild_id))
            await interaction.response.send_message(
                f"👥 Donors: {s['donors']}\n"
                f"💰 Total donations: {_money(s['total_donated'])}\n"
                f"🎪 Active draws: {s['active_draws']}\n"
                f"🎲 Draws held: {s['draws_held']}"
            )

        @self.tree.command(name="help", description="How the donation draws work")
        async def help_cmd(interaction: discord.Interaction):
            lines = [
                "**Donating**",
                "• `$tip @recipient <amount> <coin> #drawID`: enter a specific draw.",
                "• Without `#drawID`, the cheapest draw matching your donation is entered.",
                "• You get 1 entry per draw minimum amount donated.",
                "",
                "**Commands**",
                "• /draws, /draw_ids, /entries, /leaderboard, /entry_leaderboard, /accepted_coins, /donor_roles",
                "• /profile, /achievements, /history, /stats",
                "",
                "**Admin**",
                "• /setup, /create_draw, /edit_draw, /reset_draw, /schedule_draw, /cancel_draw_schedule",
                "• /select_winner, /assign_entries, /add_recipient, /remove_recipient",
                "• /add_cryptocurrency, /remove_cryptocurrency, /blacklist, /bind_tier_role, /feature, /backup, /reset_leaderboard",
            ]
            await interaction.response.send_message("\n".join(lines), ephemeral=True)

        await self._sync_commands()

    async def _sync_commands(self):
        try:
            if self.guilds:
                for guild in self.guilds:
                    if not self._guild_allowed(guild.id):
                        continue
                    try:
                        self.tree.copy_global_to(guild=guild)
                        await self.tree.sync(guild=guild)
                        log.info("Synced application commands to guild %s", guild.id)
                    except Exception as e:
                        log.warning("Guild sync failed for %s: %s", getattr(guild, "id", "?"), e)
            else:
                await self.tree.sync()
                log.info("Synced global application commands")
        except Exception as e:
            log.warning("Failed to sync commands: %s", e)

    def _winner_text(self, record) -> str:
        return (
            f"🎉 **{record.draw_name}** winner: <@{record.winner_id}>!\n"
            f"🏆 Reward: {record.reward}\n"
            f"🎯 Odds: {record.winner_entries} out of {record.total_entries} entries ({record.odds * 100:.2f}%)"
        )

    # --- events ---

    async def on_ready(self):
        log.info("Logged in as %s (id=%s)", self.user, self.user and self.user.id)
        guild_ids = [g.id for g in self.guilds if self._guild_allowed(g.id)]
        log.info("Serving guilds (%d): %s", len(guild_ids), guild_ids)
        for gid in guild_ids:
            try:
                self.store.load(gid)
            except StoreUnavailable as e:
                log.critical("Document store unusable for guild %s: %s", gid, e)
                await self.close()
                return
        if not self._synced_on_ready and self.guilds:
            await self._sync_commands()
            self._synced_on_ready = True

    async def on_guild_join(self, guild: discord.Guild):
        if not self._guild_allowed(guild.id):
            return
        try:
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            log.info("Synced commands to new guild %s", guild.id)
        except Exception as e:
            log.warning("Failed to sync commands on guild join for %s: %s", getattr(guild, "id", "?"), e)

    async def on_message(self, message: discord.Message):
        if not message.guild or not self._guild_allowed(message.guild.id):
            return
        if message.author.bot:
            if str(message.author.id) == self.cfg["tip_bot_id"]:
                await self._handle_tip_bot_message(message)
            return
        try:
            self.service.handle_intent(
                message.guild.id, message.content, message.author.id, message.id, message.channel.id,
            )
        except Exception as e:
            log.error("Error recording tip intent: %s", e)

    async def _handle_tip_bot_message(self, message: discord.Message):
        if is_tip_error(message.content, [e.title for e in message.embeds]):
            log.info("Ignoring tip error message %s", message.id)
            return
        confirmation = parse_confirmation(message.content)
        if confirmation is None:
            return
        guild = message.guild
        sender = await self._member(guild, confirmation.sender_id)
        recipient_roles: Dict[str, List[str]] = {}
        for rid in confirmation.recipient_ids:
            member = await self._member(guild, rid)
            recipient_roles[rid] = [str(r.id) for r in member.roles] if member else []
        try:
            receipts = await self.service.handle_confirmation(
                guild.id,
                confirmation,
                message.content,
                sender_name=sender.name if sender else None,
                sender_role_ids=[str(r.id) for r in sender.roles] if sender else (),
                recipient_role_ids=lambda rid: recipient_roles.get(rid, ()),
            )
        except StoreUnavailable:
            raise
        except Exception as e:
            log.error("Error processing tip message %s: %s", message.id, e)
            return
        if not receipts:
            return
        await self._announce_receipts(message, receipts)
        last = receipts[-1]
        if not last.saved:
            await self._alert(guild.id, f"Donation from <@{last.sender_id}> was processed but could not be saved.")
        await self._sync_tier_roles(guild, last.sender_id, last.allocation.total_donated, last.tiers)

    async def _announce_receipts(self, message: discord.Message, receipts: List[DonationReceipt]):
        lines = []
        for r in receipts:
            res = r.allocation
            if res.target_error:
                lines.append(
                    f"⚠️ Draw `#{r.target_draw_id}` could not take entries ({res.target_error.replace('_', ' ')})."
                )
            for o in res.entered_draws:
                if o.entry_count > 0:
                    extra = " The draw is now full." if o.is_full else ""
                    lines.append(
                        f"🎟️ {o.entry_count} entr{'y' if o.entry_count == 1 else 'ies'} in **{o.draw_name}** "
                        f"({_money(o.min_amount)} per entry).{extra}"
                    )
                else:
                    lines.append(f"❌ **{o.draw_name}** is full!")
        if not lines:
            return
        head = f"Thank you for your donation of {_money(receipts[0].usd_amount)}, <@{receipts[0].sender_id}>!"
        try:
            await message.channel.send("\n".join([head] + lines))
        except Exception as e:
            log.warning("Failed to send donation confirmation: %s", e)

    # --- scheduler ---

    @tasks.loop(seconds=60)
    async def _schedule_loop(self):
        if not self.is_ready():
            return
        lead = self.cfg["notify_lead_minutes"] * 60
        for guild in list(self.guilds):
            if not self._guild_allowed(guild.id):
                continue
            try:
                report = await self.service.run_schedule(guild.id, lead_seconds=lead)
            except StoreUnavailable:
                raise
            except Exception as e:
                log.error("Scheduler tick failed for guild %s: %s", guild.id, e)
                continue
            if not report.changed:
                continue
            if not report.saved:
                await self._alert(guild.id, "Scheduled draw results could not be saved.")
            cfg = self.store.load(guild.id).config
            ch = await self._resolve_channel(cfg.notification_channel_id)
            if ch is None:
                log.warning("No notification channel for guild %s; scheduled results not announced", guild.id)
                continue
            try:
                for draw in report.notify:
                    await ch.send(f"⏰ **{draw.name}** will be drawn at {draw.draw_time_formatted}. Last chance to donate!")
                for record in report.winners:
                    await ch.send(self._winner_text(record))
                for draw in report.empty:
                    await ch.send(f"ℹ️ Scheduled draw **{draw.name}** had no entries, so no winner was picked.")
                    await asyncio.sleep(0.5)
            except Exception as e:
                log.warning("Failed to announce scheduled draws in %s: %s", guild.id, e)

    @_schedule_loop.before_loop
    async def _before_schedule(self):
        await self.wait_until_ready()


def main() -> int:
    cfg = load_config()
    setup_logging(cfg.get("log_file"))
    token = cfg.get("token")
    if not token:
        log.error("DISCORD_TOKEN not set. Create a .env file and set DISCORD_TOKEN.")
        return 1

    intents = discord.Intents.default()
    intents.message_content = True
    intents.members = True

    try:
        bot = DonorDrawsBot(intents=intents, cfg=cfg)
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        log.info("Shutting down…")
    except StoreUnavailable as e:
        log.critical("Document store unusable: %s", e)
        return 1
    except Exception:
        log.exception("Fatal error during startup")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
