async def setup(bot):
    from .forum_sync import ForumSync

    await bot.add_cog(ForumSync(bot))
