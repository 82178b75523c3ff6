"""Catalog of text-to-speech voices and name/id lookup."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_VOICE = "BV001_streaming"


@dataclass(frozen=True)
class Voice:
    id: str
    name: str
    category: str
    language: str  # zh | en | mix | jp | es | multi


VOICES: tuple[Voice, ...] = (
    # Dialect
    Voice("zh_female_wanqudashu_moon_bigtts", "湾区大叔", "Dialect", "zh"),
    Voice("zh_female_daimengchuanmei_moon_bigtts", "呆萌川妹", "Dialect", "zh"),
    Voice("zh_male_guozhoudege_moon_bigtts", "广州德哥", "Dialect", "zh"),
    Voice("zh_male_beijingxiaoye_moon_bigtts", "北京小爷", "Dialect", "zh"),
    Voice("zh_male_haoyuxiaoge_moon_bigtts", "浩宇小哥", "Dialect", "zh"),
    Voice("zh_male_guangxiyuanzhou_moon_bigtts", "广西远舟", "Dialect", "zh"),
    Voice("zh_female_meituojieer_moon_bigtts", "妹坨洁儿", "Dialect", "zh"),
    Voice("zh_male_yuzhouzixuan_moon_bigtts", "豫州子轩", "Dialect", "zh"),
    Voice("zh_female_wanwanxiaohe_moon_bigtts", "湾湾小何", "Dialect", "zh"),
    Voice("zh_male_jingqiangkanye_moon_bigtts", "京腔侃爷/Harmony", "Dialect", "mix"),
    # General
    Voice("zh_male_shaonianzixin_moon_bigtts", "少年梓辛/Brayan", "General", "mix"),
    Voice("zh_female_linjianvhai_moon_bigtts", "邻家女孩", "General", "zh"),
    Voice("zh_male_yuanboxiaoshu_moon_bigtts", "渊博小叔", "General", "zh"),
    Voice("zh_male_yangguangqingnian_moon_bigtts", "阳光青年", "General", "zh"),
    Voice("zh_female_shuangkuaisisi_moon_bigtts", "爽快思思/Skye", "General", "mix"),
    Voice("zh_male_wennuanahu_moon_bigtts", "温暖阿虎/Alvin", "General", "mix"),
    Voice("zh_female_tianmeixiaoyuan_moon_bigtts", "甜美小源", "General", "zh"),
    Voice("zh_female_qingchezizi_moon_bigtts", "清澈梓梓", "General", "zh"),
    Voice("zh_male_jieshuoxiaoming_moon_bigtts", "解说小明", "General", "zh"),
    Voice("zh_female_kailangjiejie_moon_bigtts", "开朗姐姐", "General", "zh"),
    Voice("zh_male_linjiananhai_moon_bigtts", "邻家男孩", "General", "zh"),
    Voice("zh_female_tianmeiyueyue_moon_bigtts", "甜美悦悦", "General", "zh"),
    Voice("zh_female_xinlingjitang_moon_bigtts", "心灵鸡汤", "General", "zh"),
    Voice("zh_female_cancan_mars_bigtts", "灿灿", "General", "zh"),
    Voice("zh_female_zhixingnvsheng_mars_bigtts", "知性女声", "General", "zh"),
    Voice("zh_female_qingxinnvsheng_mars_bigtts", "清新女声", "General", "mix"),
    # Roleplay
    Voice("zh_female_meilinvyou_moon_bigtts", "魅力女友", "Roleplay", "zh"),
    Voice("zh_male_shenyeboke_moon_bigtts", "深夜播客", "Roleplay", "zh"),
    Voice("zh_female_sajiaonvyou_moon_bigtts", "柔美女友", "Roleplay", "zh"),
    Voice("zh_female_yuanqinvyou_moon_bigtts", "撒娇学妹", "Roleplay", "zh"),
    Voice("zh_female_gaolengyujie_moon_bigtts", "高冷御姐", "Roleplay", "zh"),
    Voice("zh_male_aojiaobazong_moon_bigtts", "傲娇霸总", "Roleplay", "zh"),
    Voice("ICL_zh_female_bingruoshaonv_tob", "病弱少女", "Roleplay", "zh"),
    Voice("ICL_zh_female_huoponvhai_tob", "活泼女孩", "Roleplay", "zh"),
    Voice("ICL_zh_female_heainainai_tob", "和蔼奶奶", "Roleplay", "zh"),
    Voice("ICL_zh_female_linjuayi_tob", "邻居阿姨", "Roleplay", "zh"),
    Voice("zh_female_wenrouxiaoya_moon_bigtts", "温柔小雅", "Roleplay", "zh"),
    Voice("zh_male_dongfanghaoran_moon_bigtts", "东方浩然", "Roleplay", "zh"),
    Voice("zh_male_tiancaitongsheng_mars_bigtts", "天才童声", "Roleplay", "zh"),
    Voice("zh_male_naiqimengwa_mars_bigtts", "奶气萌娃", "Roleplay", "zh"),
    Voice("zh_male_sunwukong_mars_bigtts", "猴哥", "Roleplay", "zh"),
    Voice("zh_male_xionger_mars_bigtts", "熊二", "Roleplay", "zh"),
    Voice("zh_female_peiqi_mars_bigtts", "佩奇猪", "Roleplay", "zh"),
    Voice("zh_female_popo_mars_bigtts", "婆婆", "Roleplay", "zh"),
    # Multilingual
    Voice("multi_female_shuangkuaisisi_moon_bigtts", "はるこ/Esmeralda", "Multilingual", "multi"),
    Voice("multi_male_jingqiangkanye_moon_bigtts", "かずね/Javier or Álvaro", "Multilingual", "multi"),
    Voice("multi_female_gaolengyujie_moon_bigtts", "あけみ", "Multilingual", "multi"),
    Voice("multi_male_wanqudashu_moon_bigtts", "ひろし/Roberto", "Multilingual", "multi"),
    Voice("en_female_anna_mars_bigtts", "Anna", "English", "en"),
    # Narration
    Voice("zh_male_changtianyi_mars_bigtts", "悬疑解说", "Narration", "zh"),
)

_BY_ID = {v.id: v for v in VOICES}
_BY_NAME = {v.name: v for v in VOICES}


def get_voice_id(name_or_id: str) -> str | None:
    """Return the catalog id for a voice given its id or display name, else None."""
    voice = _BY_ID.get(name_or_id) or _BY_NAME.get(name_or_id)
    return voice.id if voice else None


def get_voice_name(voice_id: str) -> str:
    """Display name for a voice id; unknown ids are returned unchanged."""
    voice = _BY_ID.get(voice_id)
    return voice.name if voice else voice_id


def resolve_voice(voice_actor: str, default: str = DEFAULT_VOICE) -> str:
    """Voice id to synthesize with: catalog match, else the raw value, else ``default``."""
    if not voice_actor:
        return default
    return get_voice_id(voice_actor) or voice_actor
